"""SQLite state management for the rankwatch server.

Manages three tables in ``.rankwatch/rankwatch.db``:

- ``items``: pending and promoted items with their projections
- ``updates``: one row per pass that changed anything (the notification feed)
- ``server_state``: singleton row with the event cursor, API token and
  housekeeping bookmarks
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from rankwatch.cadence import to_timestamp
from rankwatch.lanes import Item, QueueState

ITEM_COLUMNS = (
    "id", "lane", "ready_time", "early_time", "promote_time", "probability",
    "has_open_issue", "last_ready_anchor", "title", "owner",
)

SERVER_STATE_KEYS = {
    "last_event_id", "access_token", "token_expires_at", "last_poll_time",
    "last_snapshot_time", "last_issue_check_time",
}


class ServerDB:
    """SQLite state manager for the rankwatch server.

    Opens or creates ``.rankwatch/rankwatch.db`` and initialises the
    ``items``, ``updates`` and ``server_state`` tables.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_tables()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        return conn

    def _init_tables(self) -> None:
        conn = self._connect()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS items (
                    id                INTEGER PRIMARY KEY,
                    lane              INTEGER NOT NULL,
                    ready_time        REAL,
                    early_time        REAL,
                    promote_time      REAL,
                    probability       REAL,
                    has_open_issue    INTEGER NOT NULL DEFAULT 0,
                    last_ready_anchor REAL,
                    title             TEXT NOT NULL DEFAULT '',
                    owner             TEXT NOT NULL DEFAULT '',
                    updated_at        TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS items_ready ON items (ready_time);
                CREATE INDEX IF NOT EXISTS items_promote ON items (promote_time);

                CREATE TABLE IF NOT EXISTS updates (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at  TEXT NOT NULL,
                    updated_ids TEXT NOT NULL,
                    deleted_ids TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS server_state (
                    id                    INTEGER PRIMARY KEY CHECK (id = 1),
                    last_event_id         INTEGER,
                    access_token          TEXT,
                    token_expires_at      REAL,
                    last_poll_time        TEXT,
                    last_snapshot_time    TEXT,
                    last_issue_check_time TEXT
                );
            """)

            # Ensure singleton row exists
            conn.execute("INSERT OR IGNORE INTO server_state (id) VALUES (1)")
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def upsert_items(self, items: Iterable[Item]) -> int:
        """Insert or replace items. Returns the number written."""
        rows = [item.to_row() for item in items]
        if not rows:
            return 0
        now = _now_iso()
        columns = ", ".join(ITEM_COLUMNS) + ", updated_at"
        placeholders = ", ".join(f":{c}" for c in ITEM_COLUMNS) + ", :updated_at"
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.executemany(
                f"INSERT OR REPLACE INTO items ({columns}) VALUES ({placeholders})",
                [{**row, "updated_at": now} for row in rows],
            )
            conn.commit()
            return len(rows)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def delete_items(self, item_ids: Iterable[int]) -> int:
        """Delete items by id. Returns count removed."""
        ids = list(item_ids)
        if not ids:
            return 0
        conn = self._connect()
        try:
            placeholders = ",".join("?" for _ in ids)
            cur = conn.execute(
                f"DELETE FROM items WHERE id IN ({placeholders})", ids,
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def get_item(self, item_id: int) -> Item | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM items WHERE id = ?", (item_id,)
            ).fetchone()
            return Item.from_row(dict(row)) if row else None
        finally:
            conn.close()

    def get_pending_items(self) -> list[Item]:
        """Return unpromoted items ordered by ready time."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM items WHERE ready_time IS NOT NULL "
                "ORDER BY ready_time, id"
            ).fetchall()
            return [Item.from_row(dict(r)) for r in rows]
        finally:
            conn.close()

    def get_history_items(self, since: datetime | None = None) -> list[Item]:
        """Return promoted items (after *since*, if given) ordered by promote time."""
        query = "SELECT * FROM items WHERE ready_time IS NULL"
        params: list[Any] = []
        if since is not None:
            query += " AND promote_time > ?"
            params.append(to_timestamp(since))
        query += " ORDER BY promote_time, id"
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
            return [Item.from_row(dict(r)) for r in rows]
        finally:
            conn.close()

    def count_items(self) -> dict[str, int]:
        """Return pending and promoted counts for status display."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT "
                "SUM(CASE WHEN ready_time IS NOT NULL THEN 1 ELSE 0 END) AS pending, "
                "SUM(CASE WHEN ready_time IS NULL THEN 1 ELSE 0 END) AS promoted "
                "FROM items"
            ).fetchone()
            return {"pending": row["pending"] or 0, "promoted": row["promoted"] or 0}
        finally:
            conn.close()

    def prune_settled(self, cutoff: datetime) -> int:
        """Delete promoted items older than *cutoff*. Returns count removed."""
        conn = self._connect()
        try:
            cur = conn.execute(
                "DELETE FROM items WHERE ready_time IS NULL AND promote_time < ?",
                (to_timestamp(cutoff),),
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def clear(self) -> int:
        """Delete every item and forget the event cursor and poll times.

        The cached access token is kept. Returns the number of items removed.
        """
        conn = self._connect()
        try:
            cur = conn.execute("DELETE FROM items")
            conn.execute(
                "UPDATE server_state SET last_event_id = NULL, last_poll_time = NULL, "
                "last_snapshot_time = NULL, last_issue_check_time = NULL WHERE id = 1"
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def load_state(self, lane_count: int, history_since: datetime | None = None) -> QueueState:
        """Reconstruct the lane queues and cursor from the store."""
        return QueueState.from_items(
            lane_count,
            pending=self.get_pending_items(),
            history=self.get_history_items(history_since),
            last_event_id=self.get_server_state().get("last_event_id"),
        )

    def save_state(self, state: QueueState) -> int:
        """Write every item of *state* (full snapshot). Returns count."""
        items = list(state.history_items()) + list(state.pending_items())
        written = self.upsert_items(items)
        self.update_server_state(
            last_event_id=state.last_event_id,
            last_snapshot_time=_now_iso(),
        )
        return written

    # ------------------------------------------------------------------
    # Updates feed
    # ------------------------------------------------------------------

    def record_update(self, updated_ids: list[int], deleted_ids: list[int]) -> int:
        """Append an updates row. Returns the row id."""
        conn = self._connect()
        try:
            cur = conn.execute(
                "INSERT INTO updates (created_at, updated_ids, deleted_ids) "
                "VALUES (?, ?, ?)",
                (_now_iso(), json.dumps(updated_ids), json.dumps(deleted_ids)),
            )
            conn.commit()
            return cur.lastrowid  # type: ignore[return-value]
        finally:
            conn.close()

    def get_recent_updates(self, limit: int = 10) -> list[dict[str, Any]]:
        """Most recent updates rows, newest first, with decoded id lists."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM updates ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        finally:
            conn.close()
        result = []
        for r in rows:
            d = dict(r)
            d["updated_ids"] = json.loads(d["updated_ids"])
            d["deleted_ids"] = json.loads(d["deleted_ids"])
            result.append(d)
        return result

    # ------------------------------------------------------------------
    # Server state
    # ------------------------------------------------------------------

    def get_server_state(self) -> dict[str, Any]:
        """Return the singleton server_state row."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM server_state WHERE id = 1"
            ).fetchone()
            return dict(row) if row else {}
        finally:
            conn.close()

    def get_cursor(self) -> int | None:
        return self.get_server_state().get("last_event_id")

    def set_cursor(self, last_event_id: int | None) -> None:
        self.update_server_state(last_event_id=last_event_id)

    def update_server_state(self, **kwargs: Any) -> None:
        """Update fields on the server_state singleton.

        Valid keys: last_event_id, access_token, token_expires_at,
        last_poll_time, last_snapshot_time, last_issue_check_time.
        """
        invalid = set(kwargs) - SERVER_STATE_KEYS
        if invalid:
            raise ValueError(f"Invalid server_state keys: {invalid}")

        if not kwargs:
            return

        set_clause = ", ".join(f"{k} = ?" for k in kwargs)
        values = list(kwargs.values())
        conn = self._connect()
        try:
            conn.execute(
                f"UPDATE server_state SET {set_clause} WHERE id = 1",
                values,
            )
            conn.commit()
        finally:
            conn.close()


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat()
