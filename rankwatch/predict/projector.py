"""Per-lane projection of promotion times.

:func:`project` walks ``history ++ pending`` of one lane and recomputes
``early_time``, ``promote_time`` and ``probability`` for every pending
item at or after *start*.  Items before *start* are left untouched, so
callers pass the index of the first item a mutation could have moved.

Two limits shape the projection:

- **daily cap**: at most ``per_day`` non-flagged promotions in any
  trailing 24 hours, so an item cannot be promoted before the
  ``per_day``-th prior non-flagged item plus one day;
- **tick cap**: at most ``per_run`` non-flagged promotions per tick,
  so an item whose tick is already saturated moves to the next tick.

Items with an open issue still get a projection but are skipped when
counting toward either window.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime

from rankwatch.cadence import (
    DEFAULT_RULES,
    ONE_DAY,
    Rules,
    ceil_to_tick,
    floor_to_tick,
    seconds_into_tick,
)
from rankwatch.lanes import Item, LaneQueue
from rankwatch.predict.probability import promotion_chance


def _counted_window(combined: list[Item], end: int, size: int) -> deque[Item]:
    """The last *size* non-flagged items of ``combined[:end]``, oldest first."""
    window: deque[Item] = deque(maxlen=size)
    for i in range(end - 1, -1, -1):
        if len(window) == size:
            break
        if not combined[i].has_open_issue:
            window.appendleft(combined[i])
    return window


def _daily_cap_time(
    window: deque[Item],
    i: int,
    history_len: int,
    rules: Rules,
) -> datetime | None:
    """Earliest instant the daily cap allows for position *i*, or None.

    *window* holds the non-flagged items before position *i*, oldest first.
    """
    if len(window) < rules.per_day:
        return None
    cap_item = window[-rules.per_day]
    if cap_item.promote_time is None:
        return None

    compare = cap_item.promote_time + ONE_DAY
    if i >= history_len + rules.per_day:
        # compounding rounding further down the queue
        compare += rules.interval
    return compare


def _apply_tick_cap(item: Item, recent: list[Item], rules: Rules) -> None:
    """Push *item* out of a tick that is already saturated.

    *recent* holds the non-flagged items before *item*, most recent first.
    """
    if not recent:
        return
    head_tick = floor_to_tick(recent[0].promote_time, rules)  # type: ignore[arg-type]

    # never ahead of the item before it; the saturation check still applies
    if item.promote_time < head_tick:  # type: ignore[operator]
        item.promote_time = head_tick
        item.early_time = head_tick
        item.probability = 0

    window = recent[: rules.per_run]
    if len(window) < rules.per_run:
        return
    target_tick = floor_to_tick(item.early_time, rules)  # type: ignore[arg-type]
    ticks = [floor_to_tick(prior.promote_time, rules) for prior in window]  # type: ignore[arg-type]
    if not all(tick >= target_tick for tick in ticks):
        return

    if all(tick == ticks[-1] for tick in ticks):
        item.promote_time = head_tick + rules.interval
    else:
        item.promote_time = head_tick
    item.early_time = item.promote_time
    item.probability = 0


def project(lane: LaneQueue, start: int = 0, rules: Rules = DEFAULT_RULES) -> None:
    """Recompute projections for ``lane.pending[start:]`` in place.

    Raises :class:`~rankwatch.lanes.InvariantViolation` if ``pending``
    is not sorted by ``ready_time``.
    """
    lane.check_sorted()
    combined = lane.combined()
    history_len = len(lane.history)
    first = history_len + max(0, start)
    window = _counted_window(combined, first, max(rules.per_day, rules.per_run))

    for i in range(first, len(combined)):
        item = combined[i]
        compare = _daily_cap_time(window, i, history_len, rules)

        ready = item.ready_time
        item.early_time = ready if compare is None else max(ready, compare)  # type: ignore[type-var]

        item.probability = None
        # a rounded cap time makes the estimate meaningless
        if compare is None or ready > compare or i < history_len + rules.per_day:  # type: ignore[operator]
            item.probability = promotion_chance(
                seconds_into_tick(item.early_time, rules), rules=rules,  # type: ignore[arg-type]
            )

        item.promote_time = ceil_to_tick(item.early_time, rules)  # type: ignore[arg-type]

        if item.has_open_issue:
            continue
        if i >= rules.per_run:
            recent = [window[-k] for k in range(1, min(rules.per_run, len(window)) + 1)]
            _apply_tick_cap(item, recent, rules)
        window.append(item)


def project_all(lanes: list[LaneQueue], rules: Rules = DEFAULT_RULES) -> None:
    """Project every lane from its first pending item."""
    for lane in lanes:
        project(lane, 0, rules)
