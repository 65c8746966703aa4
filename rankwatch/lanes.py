"""Lane queues: the single mutable state of the engine.

Each lane owns two ordered sequences:

- ``history``: promoted items, ascending by ``promote_time``.  Only the
  trailing daily-cap window is kept in memory.
- ``pending``: unpromoted items, ascending by ``ready_time``.

:class:`QueueState` groups every lane together with the event cursor.
Only :mod:`rankwatch.predict.projector` writes the projection fields of a
pending item.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator

from rankwatch.cadence import from_timestamp, parse_iso, to_timestamp

log = logging.getLogger(__name__)

# Event types delivered by the event source
ENTER_QUEUE = "enter-queue"
WITHDRAW = "withdraw"
PROMOTE = "promote"
EVENT_TYPES = (ENTER_QUEUE, WITHDRAW, PROMOTE)


class InvariantViolation(Exception):
    """Raised when queue ordering or duration invariants do not hold."""


@dataclass
class Item:
    """A unit of work awaiting (or having completed) promotion."""

    id: int
    lane: int
    ready_time: datetime | None
    early_time: datetime | None = None
    promote_time: datetime | None = None
    probability: float | None = None
    has_open_issue: bool = False
    last_ready_anchor: datetime | None = None
    title: str = ""
    owner: str = ""

    @property
    def is_pending(self) -> bool:
        return self.ready_time is not None

    def comparable(self) -> tuple[Any, ...]:
        """Fields whose change makes an item dirty for persistence."""
        return (
            self.promote_time,
            self.early_time,
            self.probability,
            self.has_open_issue,
        )

    def to_row(self) -> dict[str, Any]:
        """Flatten to a store row (epoch seconds for instants)."""
        return {
            "id": self.id,
            "lane": self.lane,
            "ready_time": to_timestamp(self.ready_time),
            "early_time": to_timestamp(self.early_time),
            "promote_time": to_timestamp(self.promote_time),
            "probability": self.probability,
            "has_open_issue": int(self.has_open_issue),
            "last_ready_anchor": to_timestamp(self.last_ready_anchor),
            "title": self.title,
            "owner": self.owner,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Item:
        return cls(
            id=int(row["id"]),
            lane=int(row["lane"]),
            ready_time=from_timestamp(row["ready_time"]),
            early_time=from_timestamp(row.get("early_time")),
            promote_time=from_timestamp(row.get("promote_time")),
            probability=row.get("probability"),
            has_open_issue=bool(row.get("has_open_issue", 0)),
            last_ready_anchor=from_timestamp(row.get("last_ready_anchor")),
            title=row.get("title") or "",
            owner=row.get("owner") or "",
        )


@dataclass(frozen=True)
class QueueEvent:
    """A lifecycle event from the external event source."""

    id: int
    item_id: int
    type: str
    timestamp: datetime

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> QueueEvent:
        return cls(
            id=int(data["id"]),
            item_id=int(data["item_id"]),
            type=data["type"],
            timestamp=parse_iso(data["created_at"]),
        )


class LaneQueue:
    """History and pending sequences of one lane."""

    def __init__(
        self,
        history: list[Item] | None = None,
        pending: list[Item] | None = None,
    ) -> None:
        self.history: list[Item] = list(history or [])
        self.pending: list[Item] = list(pending or [])

    def __len__(self) -> int:
        return len(self.pending)

    def combined(self) -> list[Item]:
        return self.history + self.pending

    def index_of(self, item_id: int) -> int | None:
        for i, item in enumerate(self.pending):
            if item.id == item_id:
                return i
        return None

    def insert(self, item: Item) -> int:
        """Insert *item* into ``pending`` keeping ``ready_time`` order.

        Scans from the tail since new entries usually land near the end.
        Equal ready times keep arrival order.  Returns the insert index.
        """
        if item.ready_time is None:
            raise InvariantViolation(f"item {item.id} has no ready_time")
        i = len(self.pending)
        while i > 0 and item.ready_time < self.pending[i - 1].ready_time:  # type: ignore[operator]
            i -= 1
        self.pending.insert(i, item)
        return i

    def remove(self, item_id: int) -> tuple[Item, int] | None:
        """Remove an item from ``pending``; None when absent."""
        i = self.index_of(item_id)
        if i is None:
            return None
        return self.pending.pop(i), i

    def promote(self, item_id: int, when: datetime) -> tuple[Item, int] | None:
        """Move a pending item to the tail of ``history``.

        Returns the promoted item and its former pending index, or None
        when the item is not pending in this lane.
        """
        found = self.remove(item_id)
        if found is None:
            return None
        item, index = found
        item.promote_time = when
        item.early_time = None
        item.probability = None
        item.ready_time = None
        item.has_open_issue = False
        self.history.append(item)
        return item, index

    def prune_history(self, cutoff: datetime) -> int:
        """Drop history entries promoted before *cutoff*. Returns count."""
        before = len(self.history)
        self.history = [
            item for item in self.history
            if item.promote_time is not None and item.promote_time > cutoff
        ]
        return before - len(self.history)

    def check_sorted(self) -> None:
        """Raise :class:`InvariantViolation` unless ``pending`` is ordered."""
        for prev, cur in zip(self.pending, self.pending[1:]):
            if cur.ready_time < prev.ready_time:  # type: ignore[operator]
                raise InvariantViolation(
                    f"pending out of order: {prev.id} ({prev.ready_time}) "
                    f"before {cur.id} ({cur.ready_time})"
                )


@dataclass
class QueueState:
    """All lane queues plus the event cursor."""

    lanes: list[LaneQueue]
    last_event_id: int | None = None
    dirty: set[int] = field(default_factory=set)

    @classmethod
    def empty(cls, lane_count: int) -> QueueState:
        return cls(lanes=[LaneQueue() for _ in range(lane_count)])

    @classmethod
    def from_items(
        cls,
        lane_count: int,
        pending: list[Item],
        history: list[Item],
        last_event_id: int | None = None,
    ) -> QueueState:
        """Split flat item lists into sorted lane queues."""
        state = cls.empty(lane_count)
        for item in sorted(history, key=lambda it: it.promote_time):  # type: ignore[arg-type, return-value]
            state.lane(item.lane).history.append(item)
        for item in sorted(pending, key=lambda it: it.ready_time):  # type: ignore[arg-type, return-value]
            state.lane(item.lane).pending.append(item)
        state.last_event_id = last_event_id
        return state

    def lane(self, index: int) -> LaneQueue:
        if not 0 <= index < len(self.lanes):
            raise InvariantViolation(
                f"lane {index} out of range (0..{len(self.lanes) - 1})"
            )
        return self.lanes[index]

    def find(self, item_id: int) -> tuple[int, int] | None:
        """Locate a pending item: ``(lane, index)`` or None.

        Events carry no lane tag, so every lane is searched.
        """
        for lane_index, queue in enumerate(self.lanes):
            i = queue.index_of(item_id)
            if i is not None:
                return lane_index, i
        return None

    def pending_items(self) -> Iterator[Item]:
        for queue in self.lanes:
            yield from queue.pending

    def history_items(self) -> Iterator[Item]:
        for queue in self.lanes:
            yield from queue.history

    def snapshot(self) -> dict[int, tuple[Any, ...]]:
        """Persisted-comparable fields of every pending item."""
        return {item.id: item.comparable() for item in self.pending_items()}

    def changed_since(self, snapshot: dict[int, tuple[Any, ...]]) -> list[Item]:
        """Pending items that are new or differ from *snapshot*."""
        return [
            item for item in self.pending_items()
            if snapshot.get(item.id) != item.comparable()
        ]
