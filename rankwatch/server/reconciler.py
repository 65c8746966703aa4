"""Applies lifecycle events to the lane queues.

Item states::

    queued → pending → withdrawn (removed)
                     → promoted  (moved to history)

Each event re-projects only the affected lane from the first index the
change could have moved.  After a batch, one cross-lane adjustment runs
over every lane.

Events are applied in feed order.  A failing event is logged and
skipped; the cursor still advances to the last event of the batch so a
poisoned event can never wedge the feed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from rankwatch.cadence import DEFAULT_RULES, Rules, utcnow
from rankwatch.lanes import (
    ENTER_QUEUE,
    PROMOTE,
    WITHDRAW,
    Item,
    QueueEvent,
    QueueState,
)
from rankwatch.predict import adjust, project, project_all, recalculate
from rankwatch.server.sources import FetchError, history_cutoff

log = logging.getLogger(__name__)


class UnknownItemReference(Exception):
    """Raised when an event refers to an item no lane holds."""


@dataclass
class PassResult:
    """Outcome of applying one batch of events."""

    events: int = 0
    updated: list[Item] = field(default_factory=list)
    promoted: list[Item] = field(default_factory=list)
    withdrawn: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    last_event_id: int | None = None
    resynced: bool = False

    @property
    def deleted(self) -> list[int]:
        """Ids that left the pending set (promoted or withdrawn)."""
        return [item.id for item in self.promoted] + self.withdrawn

    @property
    def changed(self) -> bool:
        return bool(self.updated or self.promoted or self.withdrawn)


class EventReconciler:
    """State machine applying enter-queue / withdraw / promote events.

    Parameters
    ----------
    readiness:
        Builds items for enter-queue events (``build_item(item_id)``).
    events:
        Event source used for history resync (``recent_promotions(since)``).
    config:
        rankwatch config dict.
    rules:
        Promotion rules.
    clock:
        Returns the current aware UTC time.
    """

    def __init__(
        self,
        readiness: Any,
        events: Any,
        config: dict[str, Any],
        rules: Rules = DEFAULT_RULES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._readiness = readiness
        self._events = events
        self._config = config
        self._rules = rules
        self._clock = clock

    # ------------------------------------------------------------------
    # Single events
    # ------------------------------------------------------------------

    def _locate(self, state: QueueState, item_id: int) -> tuple[int, int]:
        found = state.find(item_id)
        if found is None:
            raise UnknownItemReference(f"item {item_id} is not pending in any lane")
        return found

    def enter_queue(self, state: QueueState, event: QueueEvent) -> Item:
        """Build the item for *event* and insert it into its lane."""
        item = self._readiness.build_item(event.item_id)

        # duplicate delivery: drop the stale copy first
        found = state.find(item.id)
        if found is not None:
            lane_index, index = found
            state.lanes[lane_index].pending.pop(index)
            project(state.lanes[lane_index], index, self._rules)
            log.debug("Replacing already-pending item %d", item.id)

        lane = state.lane(item.lane)
        index = lane.insert(item)
        project(lane, index, self._rules)
        return item

    def withdraw(self, state: QueueState, event: QueueEvent) -> bool:
        """Remove the item from pending. Returns False when already gone."""
        try:
            lane_index, index = self._locate(state, event.item_id)
        except UnknownItemReference:
            log.debug("Withdraw for unknown item %d ignored", event.item_id)
            return False

        lane = state.lanes[lane_index]
        lane.pending.pop(index)
        project(lane, index, self._rules)
        return True

    def promote(self, state: QueueState, event: QueueEvent) -> list[Item]:
        """Move the item to history at the event's timestamp.

        A promote for an item that is not pending means an event was
        missed; history is resynchronised from the source instead.
        Returns the items that left the pending set.
        """
        try:
            lane_index, _ = self._locate(state, event.item_id)
        except UnknownItemReference:
            log.warning(
                "Promote for unknown item %d at %s; resynchronising history",
                event.item_id, event.timestamp.isoformat(),
            )
            return self.resync_history(state)

        lane = state.lanes[lane_index]
        item = lane.pending[lane.index_of(event.item_id)]  # type: ignore[index]
        log.info(
            "Item %d promoted at %s (projected %s, early %s, probability %s)",
            item.id,
            event.timestamp.isoformat(),
            item.promote_time.isoformat() if item.promote_time else None,
            item.early_time.isoformat() if item.early_time else None,
            item.probability,
        )
        _, index = lane.promote(event.item_id, event.timestamp)  # type: ignore[misc]
        project(lane, index, self._rules)
        return [item]

    def resync_history(self, state: QueueState) -> list[Item]:
        """Replace every lane's history with the source's recent promotions.

        Pending items the source reports as promoted are dropped and
        returned as their promoted records.
        """
        promoted = self._events.recent_promotions(history_cutoff(self._config, self._clock()))
        for lane in state.lanes:
            lane.history = []
        dropped: list[Item] = []
        for item in promoted:
            found = state.find(item.id)
            if found is not None:
                state.lanes[found[0]].pending.pop(found[1])
                dropped.append(item)
            state.lane(item.lane).history.append(item)
        project_all(state.lanes, self._rules)
        log.info(
            "History resynchronised: %d promotion(s), %d stale pending item(s) dropped",
            len(promoted), len(dropped),
        )
        return dropped

    def insert(self, state: QueueState, item_id: int) -> Item:
        """Load one item by id and place it in pending or in history.

        A queued item is (re)inserted by ready time; otherwise the item
        must be among the recent promotions and replaces any stale copy
        in its lane.  The affected lane is re-projected.

        Raises
        ------
        FetchError
            If the item is neither queued nor recently promoted.
        """
        try:
            item = self._readiness.build_item(item_id)
        except FetchError:
            promoted = self._events.recent_promotions(history_cutoff(self._config, self._clock()))
            matches = [p for p in promoted if p.id == item_id]
            if not matches:
                raise
            item = matches[0]

        found = state.find(item_id)
        if found is not None:
            state.lanes[found[0]].pending.pop(found[1])
            project(state.lanes[found[0]], found[1], self._rules)

        lane = state.lane(item.lane)
        if item.is_pending:
            index = lane.insert(item)
            project(lane, index, self._rules)
        else:
            lane.history = [h for h in lane.history if h.id != item.id] + [item]
            lane.history.sort(key=lambda h: h.promote_time)  # type: ignore[arg-type, return-value]
            project(lane, 0, self._rules)
        log.info(
            "Inserted item %d into lane %d (%s)",
            item.id, item.lane, "pending" if item.is_pending else "promoted",
        )
        return item

    def rebuild(self, state: QueueState) -> None:
        """Replace *state* with a fresh load from the sources.

        The cursor is read first so events arriving during the load are
        replayed on the next pass; replays are harmless.
        """
        cursor = self._events.latest_event_id()
        history = self._events.recent_promotions(history_cutoff(self._config, self._clock()))
        flagged = self._events.open_issue_ids()

        pending: list[Item] = []
        for item_id in self._events.pending_ids():
            try:
                item = self._readiness.build_item(item_id)
            except FetchError as exc:
                log.warning("Skipping item %d during load: %s", item_id, exc)
                continue
            item.has_open_issue = item.id in flagged
            pending.append(item)

        fresh = QueueState.from_items(len(state.lanes), pending, history, cursor)
        state.lanes = fresh.lanes
        state.last_event_id = cursor
        state.dirty.clear()
        recalculate(state, self._rules)
        log.info(
            "Loaded %d pending and %d promoted item(s); cursor at %s",
            len(pending), len(history), cursor,
        )

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def apply(
        self,
        state: QueueState,
        events: list[QueueEvent],
        last_event_id: int | None = None,
    ) -> PassResult:
        """Apply *events* in order, then adjust across lanes.

        *last_event_id* is the newest id reported by the source; the
        cursor moves there (or to the last event) whatever happened to
        individual events.
        """
        snapshot = state.snapshot()
        result = PassResult(events=len(events))

        for event in events:
            log.info(
                "Applying %s event %d for item %d at %s",
                event.type, event.id, event.item_id, event.timestamp.isoformat(),
            )
            try:
                if event.type == ENTER_QUEUE:
                    self.enter_queue(state, event)
                    # withdrawn then re-entered within one batch
                    if event.item_id in result.withdrawn:
                        result.withdrawn.remove(event.item_id)
                elif event.type == WITHDRAW:
                    if self.withdraw(state, event):
                        result.withdrawn.append(event.item_id)
                elif event.type == PROMOTE:
                    if state.find(event.item_id) is None:
                        result.resynced = True
                    result.promoted.extend(self.promote(state, event))
                else:
                    log.warning("Unknown event type %r (event %d)", event.type, event.id)
            except Exception:
                log.exception("Failed to apply %s event %d for item %d", event.type, event.id, event.item_id)
                result.failed.append(event.id)

        if last_event_id is None and events:
            last_event_id = events[-1].id
        if last_event_id is not None:
            state.last_event_id = last_event_id
        result.last_event_id = state.last_event_id

        if events:
            adjust(state.lanes, self._rules)
        result.updated = state.changed_since(snapshot)
        if events:
            log.info(
                "%d event(s) applied: %d updated, %d promoted, %d withdrawn, %d failed",
                len(events), len(result.updated), len(result.promoted),
                len(result.withdrawn), len(result.failed),
            )
        return result
