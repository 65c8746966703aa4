"""Tests for rankwatch.predict.adjuster."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from rankwatch.cadence import floor_to_tick, seconds_into_tick
from rankwatch.lanes import Item, LaneQueue, QueueState
from rankwatch.predict import project_all, recalculate
from rankwatch.predict.adjuster import adjust, lane_buckets, reassess_overdue
from rankwatch.predict.probability import promotion_chance

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
TICK = timedelta(minutes=20)


def _lanes(*readies: list[timedelta]) -> list[LaneQueue]:
    lanes = [LaneQueue() for _ in range(4)]
    item_id = 1
    for lane_index, offsets in enumerate(readies):
        for offset in offsets:
            lanes[lane_index].pending.append(
                Item(id=item_id, lane=lane_index, ready_time=T0 + offset)
            )
            item_id += 1
    project_all(lanes)
    return lanes


class TestLaneBuckets:
    def test_likely_early_bucketed_by_early_tick(self) -> None:
        lanes = _lanes([timedelta(seconds=20)], [timedelta(seconds=25)])
        buckets = lane_buckets(lanes)
        assert buckets == {T0: [1, 1, 0, 0]}

    def test_unlikely_bucketed_by_promote_time(self) -> None:
        lanes = _lanes([timedelta(minutes=10)])
        item = lanes[0].pending[0]
        assert item.probability < 0.5
        assert lane_buckets(lanes) == {T0 + TICK: [1, 0, 0, 0]}

    def test_settled_bucketed_by_promote_time(self) -> None:
        lanes = _lanes([timedelta(seconds=20)])
        assert lane_buckets(lanes, settled={1}) == {T0 + TICK: [1, 0, 0, 0]}


class TestAdjust:
    def test_competing_lanes_use_other_counts(self) -> None:
        lanes = _lanes([timedelta(seconds=20)], [timedelta(seconds=25)])
        alone = lanes[0].pending[0].probability
        adjust(lanes)
        first = lanes[0].pending[0]
        second = lanes[1].pending[0]
        assert first.probability == promotion_chance(20, [1, 0, 0])
        assert second.probability == promotion_chance(25, [1, 0, 0])
        assert first.probability >= alone

    def test_single_item_uses_zero_competitors(self) -> None:
        lanes = _lanes([timedelta(seconds=40)])
        adjust(lanes)
        assert lanes[0].pending[0].probability == promotion_chance(40, [0, 0, 0])

    def test_skips_items_without_probability(self) -> None:
        lanes = _lanes([timedelta(seconds=20)])
        item = lanes[0].pending[0]
        item.probability = None
        assert adjust(lanes) == 0
        assert item.probability is None

    def test_skips_items_settled_on_tick(self) -> None:
        lanes = _lanes([timedelta(0)])
        item = lanes[0].pending[0]
        assert item.early_time == item.promote_time
        item.probability = 0.42
        adjust(lanes)
        assert item.probability == 0.42

    def test_returns_change_count(self) -> None:
        lanes = _lanes([timedelta(seconds=20)], [timedelta(seconds=25)])
        assert adjust(lanes) == 2
        assert adjust(lanes) == 0

    def test_missing_bucket_models_lane_alone(self) -> None:
        # unlikely item: bucketed at promote_time, so its early tick is empty
        lanes = _lanes([timedelta(minutes=10)])
        item = lanes[0].pending[0]
        adjust(lanes)
        assert item.probability == promotion_chance(seconds_into_tick(item.early_time))


class TestReassessOverdue:
    def test_overdue_head_leaves_early_bucket(self) -> None:
        lanes = _lanes([timedelta(seconds=20)], [timedelta(seconds=25)])
        state = QueueState(lanes=lanes)
        adjust(lanes)
        now = T0 + timedelta(minutes=5)
        changed = reassess_overdue(state, now)
        assert changed == 2
        # both left the early tick, so each is modelled alone
        assert lanes[0].pending[0].probability == promotion_chance(20)

    def test_nothing_overdue(self) -> None:
        lanes = _lanes([timedelta(minutes=30)])
        state = QueueState(lanes=lanes)
        assert reassess_overdue(state, T0) == 0


class TestRecalculate:
    def test_projects_then_adjusts(self) -> None:
        lanes = [LaneQueue() for _ in range(4)]
        lanes[0].pending.append(Item(id=1, lane=0, ready_time=T0 + timedelta(seconds=20)))
        lanes[2].pending.append(Item(id=2, lane=2, ready_time=T0 + timedelta(seconds=30)))
        state = QueueState(lanes=lanes)
        recalculate(state)
        assert lanes[0].pending[0].promote_time == T0 + TICK
        assert lanes[0].pending[0].probability == promotion_chance(20, [0, 1, 0])
        assert floor_to_tick(lanes[2].pending[0].early_time) == T0
