"""Polling scheduler: baseline passes, housekeeping and burst polling.

A baseline pass runs every ``polling.interval`` seconds.  When a pass
lands at the start of a tick and some item is due (or may be promoted early)
within the burst horizon, a :class:`BurstTicker` polls the event feed at
a short interval until those items leave the pending set.

Every mutation of the in-memory :class:`~rankwatch.lanes.QueueState`
happens under one lock.  Triggers that find it held are skipped, never
queued.
"""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, timedelta
from typing import Any, Callable

from rankwatch.cadence import DEFAULT_RULES, Rules, seconds_into_tick, utcnow
from rankwatch.lanes import Item, QueueState
from rankwatch.predict import adjust, project_all, reassess_overdue, recalculate
from rankwatch.server.reconciler import PassResult
from rankwatch.server.sources import history_cutoff

log = logging.getLogger(__name__)

# Lowest early-promotion chance that still justifies polling ahead of a tick
BURST_MIN_PROBABILITY = 0.01


# ------------------------------------------------------------------
# Burst polling
# ------------------------------------------------------------------


def burst_targets(
    state: QueueState,
    now: datetime,
    horizon: timedelta,
    rules: Rules = DEFAULT_RULES,
    min_probability: float = BURST_MIN_PROBABILITY,
) -> list[Item]:
    """Items worth polling for right now.

    Per lane, the first ``per_run`` items without an open issue that are
    already past ``early_time``, or that reach it within *horizon* with
    at least *min_probability* of being promoted early.
    """
    targets: list[Item] = []
    for lane in state.lanes:
        candidates = [item for item in lane.pending if not item.has_open_issue]
        for item in candidates[: rules.per_run]:
            if item.early_time is None:
                continue
            if item.early_time <= now or (
                item.early_time <= now + horizon
                and (item.probability or 0) >= min_probability
            ):
                targets.append(item)
    return targets


def burst_budget(now: datetime, targets: list[Item], config: dict[str, Any]) -> tuple[float, int]:
    """Start delay (seconds) and number of ticks for a burst over *targets*."""
    polling = config["polling"]
    earliest = min(item.early_time for item in targets)  # type: ignore[type-var]
    delay = max(0.0, (earliest - now).total_seconds())
    minutes = min(
        polling["burst_base_minutes"] + polling["burst_per_item_minutes"] * len(targets),
        polling["burst_max_minutes"],
    )
    repeats = math.ceil((minutes * 60 - delay) / polling["burst_interval"]) + 1
    return delay, max(1, repeats)


class BurstTicker(threading.Thread):
    """Calls *callback* every *interval* seconds, at most *repeats* times.

    The callback returns True once the burst is no longer needed.  An
    exception from the callback ends the burst.

    Parameters
    ----------
    callback:
        One burst tick; returns True to stop.
    interval:
        Seconds between ticks.
    repeats:
        Maximum number of ticks.
    delay:
        Seconds to wait before the first tick.
    """

    def __init__(
        self,
        callback: Callable[[], bool],
        interval: float,
        repeats: int,
        delay: float = 0.0,
    ) -> None:
        super().__init__(name="rankwatch-burst", daemon=True)
        self._callback = callback
        self.interval = interval
        self.repeats = repeats
        self.delay = delay
        self.ticks = 0
        self._halt = threading.Event()

    def stop(self) -> None:
        self._halt.set()

    @property
    def stopped(self) -> bool:
        return self._halt.is_set()

    def run(self) -> None:
        if self._halt.wait(self.delay):
            return
        while self.ticks < self.repeats:
            self.ticks += 1
            try:
                done = self._callback()
            except Exception:
                log.exception("Burst tick %d failed; ending burst", self.ticks)
                return
            if done:
                log.info("Burst finished after %d tick(s)", self.ticks)
                return
            if self._halt.wait(self.interval):
                return
        log.info("Burst budget of %d tick(s) exhausted", self.repeats)


# ------------------------------------------------------------------
# Scheduler
# ------------------------------------------------------------------


class PollingScheduler:
    """Drives reconcile passes against one in-memory queue state.

    Parameters
    ----------
    config:
        rankwatch config dict.
    state:
        The queue state to keep current.
    db:
        :class:`~rankwatch.server.db.ServerDB` for persistence.
    events:
        :class:`~rankwatch.server.sources.EventSource`.
    reconciler:
        :class:`~rankwatch.server.reconciler.EventReconciler`.
    notifier:
        :class:`~rankwatch.server.notify.UpdateNotifier`.
    rules:
        Promotion rules.
    clock:
        Returns the current aware UTC time.
    """

    def __init__(
        self,
        config: dict[str, Any],
        state: QueueState,
        db: Any,
        events: Any,
        reconciler: Any,
        notifier: Any,
        rules: Rules = DEFAULT_RULES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._polling = config["polling"]
        self.state = state
        self._db = db
        self._events = events
        self._reconciler = reconciler
        self._notifier = notifier
        self._rules = rules
        self._clock = clock
        self._lock = threading.Lock()
        self._burst: BurstTicker | None = None
        self._unsaved_deletes: set[int] = set()
        self._unsaved_promoted: list[Item] = []
        self._last_issue_check: datetime | None = None
        self._last_snapshot: datetime | None = None

    @property
    def burst(self) -> BurstTicker | None:
        return self._burst

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def run_pass(self) -> PassResult | None:
        """One single-flight reconcile pass. None when one is already running."""
        if not self._lock.acquire(blocking=False):
            log.info("Reconcile pass already running, skipping")
            return None
        try:
            return self._reconcile()
        finally:
            self._lock.release()

    def _reconcile(self) -> PassResult:
        events, newest = self._events.fetch_since(self.state.last_event_id)
        result = self._reconciler.apply(self.state, events, newest)
        self._persist(result.updated, result.promoted, result.withdrawn)
        return result

    def baseline(self, now: datetime | None = None, allow_burst: bool = True) -> PassResult | None:
        """Reconcile, run housekeeping, and start a burst when one is due."""
        if not self._lock.acquire(blocking=False):
            log.info("Baseline pass skipped: another pass is running")
            return None
        try:
            result = self._reconcile()
            now = now or self._clock()
            self._housekeeping(now)
        finally:
            self._lock.release()

        if allow_burst:
            self.maybe_start_burst(now)
        return result

    def bootstrap(self) -> None:
        """Rebuild the state from the event source and write a full snapshot."""
        with self._lock:
            self._reconciler.rebuild(self.state)
            self._db.save_state(self.state)
            self._last_snapshot = self._clock()
            self.state.dirty.clear()

    def recalculate(self, persist: bool = True) -> list[Item]:
        """Re-project every lane from scratch. Returns the items that changed."""
        with self._lock:
            snapshot = self.state.snapshot()
            recalculate(self.state, self._rules)
            changed = self.state.changed_since(snapshot)
            if persist:
                self._persist(changed)
            return changed

    def insert(self, item_id: int) -> tuple[Item, list[Item]]:
        """Load one item by id, re-project and persist.

        Returns the inserted item and the pending items whose projection
        changed.  A promoted item is written to the store but only
        announced as deleted when it was pending before.
        """
        with self._lock:
            snapshot = self.state.snapshot()
            was_pending = self.state.find(item_id) is not None
            item = self._reconciler.insert(self.state, item_id)
            adjust(self.state.lanes, self._rules)
            changed = self.state.changed_since(snapshot)
            if item.is_pending:
                self._persist(changed)
            elif was_pending:
                self._persist(changed, promoted=[item])
            else:
                self._unsaved_promoted.append(item)
                self._persist(changed)
            return item, changed

    def reset(self) -> int:
        """Wipe the store and reload everything from the sources.

        Returns the number of stored items removed.
        """
        self.stop()
        with self._lock:
            removed = self._db.clear()
            self._unsaved_deletes.clear()
            self._unsaved_promoted = []
            self._last_issue_check = None
        log.info("Store cleared (%d item(s)); reloading", removed)
        self.bootstrap()
        return removed

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def _housekeeping(self, now: datetime) -> None:
        snapshot = self.state.snapshot()

        if self._refresh_open_issues(now):
            recalculate(self.state, self._rules)
        self._prune(now)
        reassessed = reassess_overdue(self.state, now, self._rules)
        if reassessed:
            log.info("Reassessed %d overdue probability(ies)", reassessed)

        self._persist(self.state.changed_since(snapshot))

        interval = timedelta(hours=self._polling["snapshot_hours"])
        if self._last_snapshot is None or now - self._last_snapshot >= interval:
            try:
                written = self._db.save_state(self.state)
                self._last_snapshot = now
                log.info("Snapshot saved (%d item(s))", written)
            except Exception:
                log.exception("Failed to save snapshot")

        self._db.update_server_state(last_poll_time=now.isoformat())

    def _refresh_open_issues(self, now: datetime) -> bool:
        """Update open-issue flags. Returns True when any flag changed.

        Flagged items are re-checked every pass; every pending item is
        checked once per ``polling.issue_recheck_minutes``.
        """
        recheck = timedelta(minutes=self._polling["issue_recheck_minutes"])
        changed = False

        if self._last_issue_check is None or now - self._last_issue_check >= recheck:
            flagged = self._events.open_issue_ids()
            for item in self.state.pending_items():
                has_issue = item.id in flagged
                if has_issue != item.has_open_issue:
                    log.info("Item %d open issue: %s", item.id, has_issue)
                    item.has_open_issue = has_issue
                    changed = True
            self._last_issue_check = now
            self._db.update_server_state(last_issue_check_time=now.isoformat())
            return changed

        for item in self.state.pending_items():
            if not item.has_open_issue:
                continue
            if not self._events.has_open_issue(item.id):
                log.info("Item %d open issue resolved", item.id)
                item.has_open_issue = False
                changed = True
        return changed

    def _prune(self, now: datetime) -> None:
        cutoff = history_cutoff(self._config, now)
        pruned = sum(lane.prune_history(cutoff) for lane in self.state.lanes)
        if pruned:
            log.debug("Pruned %d history item(s) older than %s", pruned, cutoff.isoformat())
            project_all(self.state.lanes, self._rules)

        settled_before = now - timedelta(days=self._config["retention"]["settled_days"])
        removed = self._db.prune_settled(settled_before)
        if removed:
            log.info("Removed %d settled item(s) from the store", removed)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(
        self,
        updated: list[Item],
        promoted: list[Item] | None = None,
        withdrawn: list[int] | None = None,
    ) -> None:
        """Write dirty items and the cursor, then publish the change set.

        On a store failure the ids stay dirty and are written next pass.
        """
        promoted = promoted or []
        to_promote = self._unsaved_promoted + promoted
        withdrawn = withdrawn or []
        pending = {item.id: item for item in self.state.pending_items()}

        dirty = {item.id for item in updated} | (self.state.dirty & set(pending))
        deletes = (self._unsaved_deletes | set(withdrawn)) - set(pending)

        try:
            self._db.delete_items(sorted(deletes))
            self._db.upsert_items([pending[i] for i in sorted(dirty)] + to_promote)
            self._db.set_cursor(self.state.last_event_id)
            self.state.dirty.clear()
            self._unsaved_deletes.clear()
            self._unsaved_promoted = []
        except Exception:
            log.exception("Failed to persist %d item(s); will retry next pass", len(dirty))
            self.state.dirty |= dirty
            self._unsaved_promoted = to_promote
            self._unsaved_deletes = deletes

        self._notifier.publish(updated, [item.id for item in promoted] + withdrawn)

    # ------------------------------------------------------------------
    # Bursts
    # ------------------------------------------------------------------

    def maybe_start_burst(self, now: datetime) -> BurstTicker | None:
        """Start a burst when *now* is at the start of a tick and items are due."""
        if self._burst is not None and self._burst.is_alive():
            return None
        if seconds_into_tick(now, self._rules) >= self._polling["interval"]:
            return None

        horizon = timedelta(minutes=self._polling["burst_horizon_minutes"])
        with self._lock:
            targets = burst_targets(
                self.state, now, horizon, self._rules,
                self._polling["burst_min_probability"],
            )
            if not targets:
                return None
            delay, repeats = burst_budget(now, targets, self._config)
            target_ids = {item.id for item in targets}

        log.info(
            "Starting burst for %d item(s) %s in %.0fs (%d tick(s))",
            len(target_ids), sorted(target_ids), delay, repeats,
        )
        self._burst = BurstTicker(
            lambda: self._burst_tick(target_ids),
            self._polling["burst_interval"],
            repeats,
            delay,
        )
        self._burst.start()
        return self._burst

    def _burst_tick(self, target_ids: set[int]) -> bool:
        """One burst pass. True once every target left the pending set."""
        if not self._lock.acquire(blocking=False):
            log.debug("Burst tick skipped: another pass is running")
            return False
        try:
            self._reconcile()
            return all(self.state.find(item_id) is None for item_id in target_ids)
        finally:
            self._lock.release()

    def stop(self) -> None:
        """Stop any running burst and wait for it to finish."""
        if self._burst is not None:
            self._burst.stop()
            if self._burst.is_alive():
                self._burst.join(timeout=10)
