"""Notification of changed projections.

Every pass that changes a persisted-comparable field publishes the dirty
subset: an ``updates`` row in the state store (for readers polling the
database) plus a call to each in-process subscriber.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from rankwatch.lanes import Item

log = logging.getLogger(__name__)

# Subscriber signature: (updated items, deleted ids)
Subscriber = Callable[[list[Item], list[int]], None]


class UpdateNotifier:
    """Fan-out of per-pass changes.

    Parameters
    ----------
    db:
        ServerDB instance; receives one ``updates`` row per publish.
    """

    def __init__(self, db: Any) -> None:
        self._db = db
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def publish(self, updated: list[Item], deleted: list[int]) -> int | None:
        """Record and broadcast a change set. Returns the updates row id.

        Nothing is recorded for an empty change set.  Failures are logged
        and never propagate to the caller.
        """
        if not updated and not deleted:
            return None

        row_id = None
        try:
            row_id = self._db.record_update([item.id for item in updated], deleted)
        except Exception:
            log.exception("Failed to record update (%d updated, %d deleted)", len(updated), len(deleted))

        for callback in self._subscribers:
            try:
                callback(updated, deleted)
            except Exception:
                log.exception("Update subscriber %r failed", callback)

        log.info("Published %d updated, %d deleted item(s)", len(updated), len(deleted))
        return row_id
