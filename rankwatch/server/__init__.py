"""Queue server: poll events → reconcile lanes → project → persist.

Entry point: :func:`run_server` starts the foreground server loop.
:func:`run_once` applies one stateless pass, :func:`recalculate_stored`
re-projects the stored state, :func:`insert_item` loads a single item,
:func:`reset_store` rebuilds the store from scratch, :func:`get_status`
and :func:`get_queue` return data for CLI display.
"""

from __future__ import annotations

import logging
import signal
import time
from pathlib import Path
from typing import Any, NamedTuple

from rankwatch.config import db_path, rules_from_config
from rankwatch.lanes import Item, LaneQueue
from rankwatch.server.db import ServerDB
from rankwatch.server.notify import UpdateNotifier
from rankwatch.server.reconciler import EventReconciler, PassResult
from rankwatch.server.scheduler import PollingScheduler
from rankwatch.server.sources import ApiClient, EventSource, ReadinessSource, history_cutoff

log = logging.getLogger(__name__)


class Server(NamedTuple):
    """Everything one server process (or one stateless pass) needs."""

    db: ServerDB
    client: ApiClient
    scheduler: PollingScheduler


def open_server(config: dict[str, Any], project_root: Path) -> Server:
    """Wire the store, sources, reconciler and scheduler from *config*.

    The queue state is reconstructed from the store.
    """
    db = ServerDB(db_path(project_root))
    rules = rules_from_config(config)
    client = ApiClient(config, token_store=db)
    events = EventSource(client, config)
    readiness = ReadinessSource(client, config, rules)
    reconciler = EventReconciler(readiness, events, config, rules)
    state = db.load_state(rules.lanes, history_cutoff(config))
    scheduler = PollingScheduler(
        config, state, db, events, reconciler, UpdateNotifier(db), rules,
    )
    return Server(db, client, scheduler)


def _needs_bootstrap(server: Server) -> bool:
    state = server.scheduler.state
    return state.last_event_id is None and not any(state.pending_items())


def run_server(config: dict[str, Any], project_root: Path) -> None:
    """Run the rankwatch server in the foreground.

    The server loop:
    1. Loads the queue state from the store (or from the API on first run)
    2. Runs a baseline pass every ``polling.interval`` seconds
    3. Starts burst polling around ticks where items are due

    Parameters
    ----------
    config:
        rankwatch config dict.
    project_root:
        Project root directory.
    """
    server = open_server(config, project_root)
    scheduler = server.scheduler
    poll_interval = config["polling"]["interval"]

    # --- Initial load ---
    if _needs_bootstrap(server):
        log.info("Empty store: loading queue from the API...")
        scheduler.bootstrap()

    # --- Signal handling ---
    running = True

    def _shutdown(signum: int, frame: object) -> None:
        nonlocal running
        log.info("Received signal %d, shutting down...", signum)
        running = False

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    log.info(
        "rankwatch server started (poll_interval=%ds, project=%s)",
        poll_interval, project_root,
    )

    # --- Main loop ---
    while running:
        try:
            result = scheduler.baseline()
            if result is not None and result.failed:
                log.warning("Failed events: %s", result.failed)
        except Exception:
            log.exception("Error in server loop")

        # Sleep in small increments to allow clean shutdown
        for _ in range(poll_interval):
            if not running:
                break
            time.sleep(1)

    # --- Cleanup ---
    scheduler.stop()
    try:
        server.db.save_state(scheduler.state)
    except Exception:
        log.exception("Failed to save state on shutdown")
    server.client.close()
    log.info("rankwatch server stopped")


def run_once(config: dict[str, Any], project_root: Path) -> PassResult | None:
    """Apply one stateless pass against the stored state.

    Loads state from the store, applies the new events with housekeeping,
    writes the difference and exits.  No burst is started.  Returns None
    when the store was empty and a full load ran instead.
    """
    server = open_server(config, project_root)
    try:
        if _needs_bootstrap(server):
            log.info("Empty store: loading queue from the API...")
            server.scheduler.bootstrap()
            return None
        return server.scheduler.baseline(allow_burst=False)
    finally:
        server.client.close()


def recalculate_stored(
    config: dict[str, Any],
    project_root: Path,
    dry_run: bool = False,
) -> list[Item]:
    """Re-project every lane of the stored state. Returns changed items."""
    server = open_server(config, project_root)
    try:
        changed = server.scheduler.recalculate(persist=not dry_run)
    finally:
        server.client.close()
    log.info("%d item(s) changed%s", len(changed), " (dry run)" if dry_run else "")
    return changed


def insert_item(
    config: dict[str, Any],
    project_root: Path,
    item_id: int,
) -> tuple[Item, list[Item]]:
    """Load one item by id into the stored state.

    Returns the item and the pending items whose projection changed.
    """
    server = open_server(config, project_root)
    try:
        return server.scheduler.insert(item_id)
    finally:
        server.client.close()


def reset_store(config: dict[str, Any], project_root: Path) -> int:
    """Wipe the stored state and reload it from the API.

    Returns the number of pending items after the reload.
    """
    server = open_server(config, project_root)
    try:
        server.scheduler.reset()
        return sum(1 for _ in server.scheduler.state.pending_items())
    finally:
        server.client.close()


def get_queue(config: dict[str, Any], project_root: Path) -> list[LaneQueue]:
    """Stored lanes (history window and pending) for display."""
    path = db_path(project_root)
    if not path.exists():
        return []
    db = ServerDB(path)
    rules = rules_from_config(config)
    return db.load_state(rules.lanes, history_cutoff(config)).lanes


def get_status(config: dict[str, Any], project_root: Path) -> dict[str, Any]:
    """Get current server status for CLI display.

    Returns a dict with item counts, server state and recent updates.
    """
    path = db_path(project_root)

    if not path.exists():
        return {
            "running": False,
            "error": "No database found. Run 'rankwatch init' first.",
        }

    db = ServerDB(path)
    server_state = db.get_server_state()
    # never show the token itself
    server_state.pop("access_token", None)

    return {
        "items": db.count_items(),
        "server_state": server_state,
        "recent_updates": db.get_recent_updates(limit=5),
    }
