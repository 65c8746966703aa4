"""Tests for rankwatch.lanes and rankwatch.cadence."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from rankwatch.cadence import (
    Rules,
    ceil_to_tick,
    floor_to_tick,
    is_tick_aligned,
    parse_iso,
    seconds_into_tick,
)
from rankwatch.lanes import InvariantViolation, Item, LaneQueue, QueueEvent, QueueState

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _item(item_id: int, minutes: float, lane: int = 0) -> Item:
    return Item(id=item_id, lane=lane, ready_time=T0 + timedelta(minutes=minutes))


class TestCadence:
    def test_floor_and_ceil(self) -> None:
        when = T0 + timedelta(minutes=25, seconds=3)
        assert floor_to_tick(when) == T0 + timedelta(minutes=20)
        assert ceil_to_tick(when) == T0 + timedelta(minutes=40)

    def test_aligned_instant_is_fixed_point(self) -> None:
        when = T0 + timedelta(minutes=40)
        assert floor_to_tick(when) == when
        assert ceil_to_tick(when) == when
        assert is_tick_aligned(when)

    def test_seconds_into_tick(self) -> None:
        assert seconds_into_tick(T0 + timedelta(minutes=21, seconds=30)) == 90.0

    def test_custom_interval(self) -> None:
        rules = Rules(interval_minutes=15)
        assert ceil_to_tick(T0 + timedelta(minutes=1), rules) == T0 + timedelta(minutes=15)

    def test_sub_second_precision(self) -> None:
        when = T0 + timedelta(minutes=20, microseconds=1)
        assert ceil_to_tick(when) == T0 + timedelta(minutes=40)

    def test_parse_iso_z_suffix(self) -> None:
        assert parse_iso("2024-01-01T00:20:00Z") == T0 + timedelta(minutes=20)

    def test_parse_iso_naive_is_utc(self) -> None:
        assert parse_iso("2024-01-01T00:00:00") == T0


class TestLaneQueue:
    def test_insert_keeps_order(self) -> None:
        lane = LaneQueue(pending=[_item(1, 0), _item(2, 60)])
        index = lane.insert(_item(3, 30))
        assert index == 1
        assert [i.id for i in lane.pending] == [1, 3, 2]

    def test_insert_equal_ready_time_goes_last(self) -> None:
        lane = LaneQueue(pending=[_item(1, 0), _item(2, 0)])
        assert lane.insert(_item(3, 0)) == 2

    def test_insert_without_ready_time_raises(self) -> None:
        with pytest.raises(InvariantViolation):
            LaneQueue().insert(Item(id=1, lane=0, ready_time=None))

    def test_remove(self) -> None:
        lane = LaneQueue(pending=[_item(1, 0), _item(2, 10)])
        item, index = lane.remove(2)  # type: ignore[misc]
        assert item.id == 2 and index == 1
        assert lane.remove(2) is None

    def test_promote_moves_to_history(self) -> None:
        lane = LaneQueue(pending=[_item(1, 0), _item(2, 10)])
        lane.pending[0].probability = 0.8
        lane.pending[0].early_time = T0
        item, index = lane.promote(1, T0 + timedelta(hours=1))  # type: ignore[misc]
        assert index == 0
        assert lane.history == [item]
        assert item.promote_time == T0 + timedelta(hours=1)
        assert item.early_time is None and item.probability is None
        assert not item.is_pending
        assert [i.id for i in lane.pending] == [2]

    def test_promote_absent(self) -> None:
        assert LaneQueue().promote(9, T0) is None

    def test_prune_history(self) -> None:
        old = Item(id=1, lane=0, ready_time=None, promote_time=T0)
        recent = Item(id=2, lane=0, ready_time=None, promote_time=T0 + timedelta(hours=2))
        lane = LaneQueue(history=[old, recent])
        assert lane.prune_history(T0 + timedelta(hours=1)) == 1
        assert lane.history == [recent]

    def test_check_sorted_raises(self) -> None:
        lane = LaneQueue(pending=[_item(1, 10), _item(2, 0)])
        with pytest.raises(InvariantViolation):
            lane.check_sorted()


class TestQueueState:
    def test_from_items_splits_by_lane(self) -> None:
        state = QueueState.from_items(
            2,
            pending=[_item(1, 30, lane=1), _item(2, 10, lane=1), _item(3, 0, lane=0)],
            history=[],
            last_event_id=7,
        )
        assert [i.id for i in state.lanes[0].pending] == [3]
        assert [i.id for i in state.lanes[1].pending] == [2, 1]
        assert state.last_event_id == 7

    def test_lane_out_of_range(self) -> None:
        with pytest.raises(InvariantViolation):
            QueueState.empty(4).lane(4)

    def test_find(self) -> None:
        state = QueueState.from_items(2, pending=[_item(5, 0, lane=1)], history=[])
        assert state.find(5) == (1, 0)
        assert state.find(6) is None

    def test_changed_since(self) -> None:
        state = QueueState.from_items(1, pending=[_item(1, 0), _item(2, 10)], history=[])
        snapshot = state.snapshot()
        state.lanes[0].pending[1].probability = 0.5
        state.lanes[0].insert(_item(3, 20))
        assert [i.id for i in state.changed_since(snapshot)] == [2, 3]


class TestItemRows:
    def test_row_round_trip(self) -> None:
        item = Item(
            id=1, lane=2, ready_time=T0, early_time=T0,
            promote_time=T0 + timedelta(minutes=20), probability=0.25,
            has_open_issue=True, title="song", owner="mapper",
        )
        assert Item.from_row(item.to_row()) == item

    def test_event_from_api(self) -> None:
        event = QueueEvent.from_api(
            {"id": 3, "item_id": 9, "type": "withdraw", "created_at": "2024-01-01T00:00:00Z"}
        )
        assert event == QueueEvent(id=3, item_id=9, type="withdraw", timestamp=T0)
