"""Cross-lane probability correction.

Lanes are projected independently, but every lane shares the same
promotion run.  After all lanes are projected, items are bucketed by the
tick they most likely land in and each still-uncertain probability is
recomputed with the other lanes' bucket counts as competitors.

This is a single pass, not iterated to a fixed point.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from datetime import datetime

from rankwatch.cadence import DEFAULT_RULES, Rules, floor_to_tick, seconds_into_tick
from rankwatch.lanes import Item, LaneQueue, QueueState
from rankwatch.predict.probability import promotion_chance

log = logging.getLogger(__name__)


def _bucket_key(item: Item, rules: Rules, settled: Collection[int]) -> datetime:
    # likely-early items compete in the tick holding early_time
    if item.id not in settled and (item.probability or 0) > rules.split:
        return floor_to_tick(item.early_time, rules)  # type: ignore[arg-type]
    return item.promote_time  # type: ignore[return-value]


def lane_buckets(
    lanes: list[LaneQueue],
    rules: Rules = DEFAULT_RULES,
    settled: Collection[int] = (),
) -> dict[datetime, list[int]]:
    """Per-lane item counts keyed by the tick each item is expected in."""
    buckets: dict[datetime, list[int]] = {}
    for lane_index, lane in enumerate(lanes):
        for item in lane.pending:
            key = _bucket_key(item, rules, settled)
            counts = buckets.setdefault(key, [0] * len(lanes))
            counts[lane_index] += 1
    return buckets


def adjust(
    lanes: list[LaneQueue],
    rules: Rules = DEFAULT_RULES,
    settled: Collection[int] = (),
) -> int:
    """Recompute probabilities against competing lanes. Returns changes.

    *settled* lists ids whose early tick already passed without a
    promotion; they are bucketed by ``promote_time`` whatever their
    probability says.
    """
    buckets = lane_buckets(lanes, rules, settled)
    changed = 0
    for lane_index, lane in enumerate(lanes):
        for item in lane.pending:
            if item.probability is None or item.early_time == item.promote_time:
                continue
            counts = buckets.get(floor_to_tick(item.early_time, rules))  # type: ignore[arg-type]
            others = None
            if counts is not None:
                others = [c for i, c in enumerate(counts) if i != lane_index]
            probability = promotion_chance(
                seconds_into_tick(item.early_time, rules), others, rules,  # type: ignore[arg-type]
            )
            if probability != item.probability:
                item.probability = probability
                changed += 1
    return changed


def reassess_overdue(
    state: QueueState,
    now: datetime,
    rules: Rules = DEFAULT_RULES,
) -> int:
    """Re-run :func:`adjust` treating overdue likely-early items as settled.

    An item at the head of its lane whose ``early_time`` has passed but
    which was not promoted early will be promoted at ``promote_time``, so
    it no longer competes in its early tick.  Returns the number of
    probabilities that changed.
    """
    settled = []
    for lane in state.lanes:
        for item in lane.pending[: rules.per_run]:
            if item.early_time is None or now < item.early_time:
                break
            if (item.probability or 0) > rules.split:
                settled.append(item.id)
    if not settled:
        return 0
    log.debug("Treating %d overdue item(s) as settled: %s", len(settled), settled)
    return adjust(state.lanes, rules, settled)
