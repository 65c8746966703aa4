"""Tests for the rankwatch server module."""

from __future__ import annotations

import copy
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from rankwatch.config import load_config
from rankwatch.lanes import ENTER_QUEUE, Item, QueueEvent, QueueState
from rankwatch.server import get_queue, get_status, recalculate_stored, run_once
from rankwatch.server.db import ServerDB
from rankwatch.server.notify import UpdateNotifier

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
TICK = timedelta(minutes=20)


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / ".rankwatch" / "rankwatch.db"


@pytest.fixture()
def db(db_path: Path) -> ServerDB:
    return ServerDB(db_path)


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    """Set up a minimal rankwatch project."""
    rankwatch_dir = tmp_path / ".rankwatch"
    rankwatch_dir.mkdir(exist_ok=True)
    (rankwatch_dir / "config.yaml").write_text("lanes: 4\n")
    return tmp_path


@pytest.fixture()
def config(project: Path) -> dict:
    return load_config(project)


def _pending(item_id: int, minutes: float, lane: int = 0) -> Item:
    return Item(
        id=item_id,
        lane=lane,
        ready_time=T0 + timedelta(minutes=minutes),
        promote_time=T0 + TICK,
        early_time=T0 + timedelta(minutes=minutes),
        probability=0.5,
    )


def _promoted(item_id: int, when: datetime, lane: int = 0) -> Item:
    return Item(id=item_id, lane=lane, ready_time=None, promote_time=when)


# ==================================================================
# ServerDB Tests
# ==================================================================


class TestServerDBInit:
    def test_creates_tables(self, db_path: Path) -> None:
        ServerDB(db_path)
        conn = sqlite3.connect(str(db_path))
        tables = {
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        conn.close()
        assert {"items", "updates", "server_state"} <= tables

    def test_server_state_singleton(self, db: ServerDB) -> None:
        state = db.get_server_state()
        assert state["id"] == 1
        assert state["last_event_id"] is None

    def test_reinit_preserves_data(self, db_path: Path) -> None:
        ServerDB(db_path).upsert_items([_pending(1, 1)])
        assert ServerDB(db_path).get_item(1) is not None

    def test_connections_closed_per_call(self, db: ServerDB, db_path: Path) -> None:
        db.upsert_items([_pending(1, 1)])
        # no handle is held between calls, so another writer is never blocked
        conn = sqlite3.connect(str(db_path), timeout=0)
        try:
            conn.execute("DELETE FROM items")
            conn.commit()
        finally:
            conn.close()
        assert db.get_item(1) is None
        assert not hasattr(db, "__enter__")


class TestItems:
    def test_upsert_and_get(self, db: ServerDB) -> None:
        item = _pending(1, 3, lane=2)
        item.title = "song"
        assert db.upsert_items([item]) == 1
        assert db.get_item(1) == item

    def test_upsert_replaces(self, db: ServerDB) -> None:
        db.upsert_items([_pending(1, 3)])
        changed = _pending(1, 3)
        changed.probability = 0.9
        db.upsert_items([changed])
        assert db.get_item(1).probability == 0.9  # type: ignore[union-attr]
        assert db.count_items() == {"pending": 1, "promoted": 0}

    def test_upsert_empty(self, db: ServerDB) -> None:
        assert db.upsert_items([]) == 0

    def test_delete(self, db: ServerDB) -> None:
        db.upsert_items([_pending(1, 1), _pending(2, 2)])
        assert db.delete_items([1, 3]) == 1
        assert db.get_item(1) is None
        assert db.delete_items([]) == 0

    def test_pending_and_history_split(self, db: ServerDB) -> None:
        db.upsert_items([
            _pending(2, 5),
            _pending(1, 1),
            _promoted(3, T0 - timedelta(hours=2)),
            _promoted(4, T0 - timedelta(hours=30)),
        ])
        assert [i.id for i in db.get_pending_items()] == [1, 2]
        assert [i.id for i in db.get_history_items()] == [4, 3]
        assert [i.id for i in db.get_history_items(T0 - timedelta(hours=25))] == [3]
        assert db.count_items() == {"pending": 2, "promoted": 2}

    def test_prune_settled(self, db: ServerDB) -> None:
        db.upsert_items([
            _pending(1, 1),
            _promoted(3, T0 - timedelta(days=2)),
            _promoted(4, T0 - timedelta(days=9)),
        ])
        assert db.prune_settled(T0 - timedelta(days=7)) == 1
        assert db.get_item(4) is None
        assert db.get_item(1) is not None

    def test_clear(self, db: ServerDB) -> None:
        db.upsert_items([_pending(1, 1), _promoted(3, T0 - timedelta(hours=2))])
        db.update_server_state(
            last_event_id=42, access_token="abc", last_poll_time=T0.isoformat(),
        )
        assert db.clear() == 2
        assert db.count_items() == {"pending": 0, "promoted": 0}
        state = db.get_server_state()
        assert state["last_event_id"] is None
        assert state["last_poll_time"] is None
        assert state["access_token"] == "abc"


class TestStateRoundTrip:
    def test_save_and_load(self, db: ServerDB) -> None:
        state = QueueState.from_items(
            4,
            pending=[_pending(1, 1), _pending(2, 2, lane=3)],
            history=[_promoted(3, T0 - timedelta(hours=1), lane=3)],
            last_event_id=42,
        )
        assert db.save_state(state) == 3

        loaded = db.load_state(4, T0 - timedelta(hours=25))
        assert loaded.last_event_id == 42
        assert [i.id for i in loaded.lanes[0].pending] == [1]
        assert [i.id for i in loaded.lanes[3].pending] == [2]
        assert [i.id for i in loaded.lanes[3].history] == [3]
        assert loaded.snapshot() == state.snapshot()
        assert db.get_server_state()["last_snapshot_time"] is not None


class TestServerState:
    def test_cursor(self, db: ServerDB) -> None:
        assert db.get_cursor() is None
        db.set_cursor(99)
        assert db.get_cursor() == 99

    def test_update_valid_keys(self, db: ServerDB) -> None:
        db.update_server_state(access_token="abc", token_expires_at=123.0)
        state = db.get_server_state()
        assert state["access_token"] == "abc"
        assert state["token_expires_at"] == 123.0

    def test_update_invalid_key(self, db: ServerDB) -> None:
        with pytest.raises(ValueError, match="Invalid server_state keys"):
            db.update_server_state(bogus=1)

    def test_update_nothing(self, db: ServerDB) -> None:
        db.update_server_state()
        assert db.get_cursor() is None


class TestUpdatesFeed:
    def test_record_and_read(self, db: ServerDB) -> None:
        first = db.record_update([1, 2], [])
        second = db.record_update([], [3])
        assert second > first
        recent = db.get_recent_updates()
        assert recent[0]["deleted_ids"] == [3]
        assert recent[1]["updated_ids"] == [1, 2]

    def test_limit(self, db: ServerDB) -> None:
        for i in range(5):
            db.record_update([i], [])
        assert len(db.get_recent_updates(limit=2)) == 2


# ==================================================================
# Notifier Tests
# ==================================================================


class TestUpdateNotifier:
    def test_publishes_to_store_and_subscribers(self, db: ServerDB) -> None:
        notifier = UpdateNotifier(db)
        seen = []
        notifier.subscribe(lambda updated, deleted: seen.append(([i.id for i in updated], deleted)))
        row_id = notifier.publish([_pending(1, 1)], [7])
        assert row_id is not None
        assert seen == [([1], [7])]
        assert db.get_recent_updates()[0]["updated_ids"] == [1]

    def test_empty_change_set_ignored(self, db: ServerDB) -> None:
        notifier = UpdateNotifier(db)
        subscriber = MagicMock()
        notifier.subscribe(subscriber)
        assert notifier.publish([], []) is None
        subscriber.assert_not_called()
        assert db.get_recent_updates() == []

    def test_subscriber_failure_does_not_propagate(self, db: ServerDB) -> None:
        notifier = UpdateNotifier(db)
        notifier.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        after = MagicMock()
        notifier.subscribe(after)
        notifier.publish([], [1])
        after.assert_called_once_with([], [1])

    def test_store_failure_still_notifies(self) -> None:
        db = MagicMock()
        db.record_update.side_effect = sqlite3.OperationalError("locked")
        notifier = UpdateNotifier(db)
        subscriber = MagicMock()
        notifier.subscribe(subscriber)
        assert notifier.publish([], [1]) is None
        subscriber.assert_called_once()


# ==================================================================
# Server entry points
# ==================================================================


class FakeReadiness:
    def __init__(self, items: dict[int, Item]) -> None:
        self.items = items

    def build_item(self, item_id: int) -> Item:
        return copy.deepcopy(self.items[item_id])


@pytest.fixture()
def events() -> MagicMock:
    source = MagicMock()
    source.latest_event_id.return_value = 100
    source.pending_ids.return_value = [1]
    source.open_issue_ids.return_value = set()
    source.recent_promotions.return_value = []
    source.fetch_since.return_value = ([], 100)
    return source


@pytest.fixture()
def sources(events: MagicMock):
    readiness = FakeReadiness({
        1: Item(id=1, lane=0, ready_time=T0 + timedelta(minutes=1)),
        2: Item(id=2, lane=1, ready_time=T0 + timedelta(hours=2, minutes=1)),
    })
    with patch("rankwatch.server.EventSource", return_value=events), \
         patch("rankwatch.server.ReadinessSource", return_value=readiness):
        yield events


class TestRunOnce:
    def test_empty_store_bootstraps(self, config: dict, project: Path, sources: MagicMock) -> None:
        assert run_once(config, project) is None
        db = ServerDB(project / ".rankwatch" / "rankwatch.db")
        assert db.get_cursor() == 100
        assert [i.id for i in db.get_pending_items()] == [1]
        sources.fetch_since.assert_not_called()

    def test_applies_new_events(self, config: dict, project: Path, sources: MagicMock) -> None:
        run_once(config, project)
        sources.fetch_since.return_value = (
            [QueueEvent(id=101, item_id=2, type=ENTER_QUEUE, timestamp=T0)], 101,
        )
        result = run_once(config, project)

        assert result is not None
        assert [i.id for i in result.updated] == [2]
        sources.fetch_since.assert_called_once_with(100)
        db = ServerDB(project / ".rankwatch" / "rankwatch.db")
        assert db.get_cursor() == 101
        assert {i.id for i in db.get_pending_items()} == {1, 2}


class TestRecalculateStored:
    def test_dry_run(self, config: dict, project: Path, db: ServerDB, sources: MagicMock) -> None:
        stale = _pending(1, 1)
        stale.promote_time = T0 + 5 * TICK
        db.upsert_items([stale])
        db.set_cursor(100)

        changed = recalculate_stored(config, project, dry_run=True)
        assert [i.id for i in changed] == [1]
        assert db.get_item(1).promote_time == T0 + 5 * TICK  # type: ignore[union-attr]

        recalculate_stored(config, project)
        assert db.get_item(1).promote_time == T0 + TICK  # type: ignore[union-attr]


class TestGetStatus:
    def test_no_database(self, config: dict, project: Path) -> None:
        info = get_status(config, project)
        assert info["running"] is False
        assert "rankwatch init" in info["error"]

    def test_hides_token(self, config: dict, project: Path, db: ServerDB) -> None:
        db.update_server_state(access_token="secret", last_event_id=5)
        db.upsert_items([_pending(1, 1)])
        info = get_status(config, project)
        assert info["items"] == {"pending": 1, "promoted": 0}
        assert info["server_state"]["last_event_id"] == 5
        assert "access_token" not in info["server_state"]


class TestGetQueue:
    def test_no_database(self, config: dict, project: Path) -> None:
        assert get_queue(config, project) == []

    def test_lanes(self, config: dict, project: Path, db: ServerDB) -> None:
        db.upsert_items([_pending(1, 1, lane=2)])
        lanes = get_queue(config, project)
        assert len(lanes) == 4
        assert [i.id for i in lanes[2].pending] == [1]
