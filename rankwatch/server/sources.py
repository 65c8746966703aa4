"""External event and readiness sources.

The external system exposes a paginated lifecycle-event feed plus per-item
detail and discussion endpoints behind OAuth client credentials.  Three
layers sit on top of it:

1. :class:`ApiClient`: authenticated GET with token caching, 401 refresh
   and exponential backoff on transient failures.
2. :class:`EventSource`: the event feed (``fetch_since``), recent
   promotions for history resync, and open-issue lookups.
3. :class:`ReadinessSource`: builds an :class:`~rankwatch.lanes.Item`
   for a newly queued id, deriving ``ready_time`` with
   :func:`compute_ready_time`.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx

from rankwatch.cadence import DEFAULT_RULES, ONE_DAY, Rules, parse_iso, utcnow
from rankwatch.lanes import (
    ENTER_QUEUE,
    PROMOTE,
    WITHDRAW,
    InvariantViolation,
    Item,
    QueueEvent,
)

log = logging.getLogger(__name__)

# External event names → lifecycle event types
EVENT_TYPE_MAP = {
    "qualify": ENTER_QUEUE,
    "disqualify": WITHDRAW,
    "rank": PROMOTE,
}
ENDORSE = "nominate"
ENDORSE_RESET = "nomination_reset"

# Tokens are refreshed an hour before they expire
TOKEN_EXPIRY_MARGIN = 3600
SEARCH_PAGE_SIZE = 50


class FetchError(Exception):
    """Raised when the external API returns an unusable response."""


class TransientFetchError(FetchError):
    """Raised when the external API stays unreachable after retries."""


# ------------------------------------------------------------------
# HTTP client
# ------------------------------------------------------------------


class ApiClient:
    """Authenticated client for the external API.

    Parameters
    ----------
    config:
        rankwatch config dict (uses the ``api`` section).
    token_store:
        Optional object with ``get_server_state`` / ``update_server_state``
        (e.g. :class:`~rankwatch.server.db.ServerDB`) used to cache the
        access token across runs.
    http:
        Preconfigured :class:`httpx.Client`; built from config if omitted.
    sleep:
        Sleep function used for backoff.
    """

    def __init__(
        self,
        config: dict[str, Any],
        token_store: Any = None,
        http: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        api = config["api"]
        self._base_url = api["base_url"].rstrip("/")
        self._client_id = os.environ.get(api["client_id_env"], "")
        self._client_secret = os.environ.get(api["client_secret_env"], "")
        self._max_retries = api.get("max_retries", 3)
        self._backoff = api.get("backoff_seconds", 2)
        self._min_gap = api.get("min_request_interval", 0)
        self._http = http or httpx.Client(timeout=api.get("timeout", 30))
        self._token_store = token_store
        self._sleep = sleep
        self._token: str | None = None
        self._expires_at: float = 0.0
        self._last_request: float = 0.0

        if token_store is not None:
            state = token_store.get_server_state()
            self._token = state.get("access_token")
            self._expires_at = state.get("token_expires_at") or 0.0

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # --- token ---

    def _refresh_token(self) -> str:
        try:
            response = self._http.post(
                f"{self._base_url}/oauth/token",
                json={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                    "scope": "public",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.TransportError as exc:
            raise TransientFetchError(f"token request failed: {exc}") from exc
        if response.status_code != 200:
            raise TransientFetchError(
                f"token request failed with HTTP {response.status_code}"
            )
        data = response.json()
        self._token = data["access_token"]
        self._expires_at = time.time() + data["expires_in"] - TOKEN_EXPIRY_MARGIN
        log.info(
            "New access token (expires %s)",
            datetime.fromtimestamp(self._expires_at).isoformat(),
        )
        if self._token_store is not None:
            self._token_store.update_server_state(
                access_token=self._token,
                token_expires_at=self._expires_at,
            )
        return self._token

    def token(self) -> str:
        if self._token is None or time.time() >= self._expires_at:
            return self._refresh_token()
        return self._token

    # --- requests ---

    def _throttle(self) -> None:
        if self._min_gap <= 0:
            return
        wait = self._last_request + self._min_gap - time.monotonic()
        if wait > 0:
            self._sleep(wait)

    def get(self, path: str, params: Any = None) -> Any:
        """GET ``/api/v2/<path>`` and return the decoded JSON body.

        Retries transport errors, 429 and 5xx with exponential backoff.
        A 401 drops the cached token and retries once with a new one.

        Raises
        ------
        TransientFetchError
            If every attempt failed.
        FetchError
            On a non-retryable HTTP error (e.g. 404).
        """
        url = f"{self._base_url}/api/v2/{path.lstrip('/')}"
        refreshed = False
        last_error = ""

        for attempt in range(1 + self._max_retries):
            if attempt > 0:
                delay = self._backoff * 2 ** (attempt - 1)
                log.info("Retry %d/%d for %s in %ss", attempt, self._max_retries, path, delay)
                self._sleep(delay)

            self._throttle()
            try:
                response = self._http.get(
                    url,
                    params=params,
                    headers={"Authorization": f"Bearer {self.token()}"},
                )
            except httpx.TransportError as exc:
                last_error = str(exc)
                log.warning("Request to %s failed: %s", path, exc)
                continue
            finally:
                self._last_request = time.monotonic()

            if response.status_code == 401 and not refreshed:
                log.info("Access token rejected, refreshing")
                self._token = None
                refreshed = True
                last_error = "HTTP 401"
                continue
            if response.status_code == 429 or response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                log.warning("Request to %s returned %s", path, last_error)
                continue
            if response.status_code != 200:
                raise FetchError(f"GET {path} returned HTTP {response.status_code}")
            return response.json()

        raise TransientFetchError(f"GET {path} failed: {last_error}")


# ------------------------------------------------------------------
# Event source
# ------------------------------------------------------------------


def _event_from_api(data: dict[str, Any]) -> QueueEvent | None:
    event_type = EVENT_TYPE_MAP.get(data.get("type", ""))
    if event_type is None:
        return None
    beatmapset = data.get("beatmapset") or {}
    item_id = beatmapset.get("id") or (data.get("discussion") or {}).get("beatmapset_id")
    return QueueEvent(
        id=int(data["id"]),
        item_id=int(item_id),
        type=event_type,
        timestamp=parse_iso(data["created_at"]),
    )


def _lane_of(data: dict[str, Any]) -> int:
    modes = [b["mode_int"] for b in data.get("beatmaps") or []]
    return min(modes) if modes else 0


class EventSource:
    """Lifecycle-event feed plus the lookups needed to resynchronise.

    Parameters
    ----------
    client:
        :class:`ApiClient` (or anything with a compatible ``get``).
    config:
        rankwatch config dict (uses the ``polling`` section).
    sleep:
        Sleep function used for the rate-limit pause.
    """

    def __init__(
        self,
        client: Any,
        config: dict[str, Any],
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        polling = config["polling"]
        self._client = client
        self._page_limit = polling.get("page_limit", 5)
        self._calls_before_pause = polling.get("calls_before_pause", 30)
        self._pause_seconds = polling.get("pause_seconds", 60)
        self._sleep = sleep

    def _events_page(self, page: int, limit: int) -> list[dict[str, Any]]:
        params = [
            ("types[]", "qualify"),
            ("types[]", "rank"),
            ("types[]", "disqualify"),
            ("limit", limit),
            ("page", page),
        ]
        return self._client.get("beatmapsets/events", params=params).get("events", [])

    def latest_event_id(self) -> int | None:
        events = self._events_page(1, self._page_limit)
        return int(events[0]["id"]) if events else None

    def fetch_since(self, cursor: int | None) -> tuple[list[QueueEvent], int | None]:
        """Return events newer than *cursor*, oldest first, and the newest id.

        The feed is newest-first and pages shift while new events arrive,
        so ids already collected are skipped.  With no cursor, nothing is
        replayed and only the newest id is returned.
        """
        if cursor is None:
            return [], self.latest_event_id()

        collected: list[QueueEvent] = []
        seen: set[int] = set()
        newest: int | None = None
        calls = 0
        page = 1

        while True:
            events = self._events_page(page, self._page_limit)
            calls += 1
            if not events:
                log.warning("Event cursor %s not found; feed exhausted at page %d", cursor, page)
                break
            if newest is None:
                newest = int(events[0]["id"])
            for data in events:
                event_id = int(data["id"])
                if event_id == cursor or event_id < cursor:
                    collected.reverse()
                    return collected, newest
                if event_id in seen:
                    continue
                seen.add(event_id)
                event = _event_from_api(data)
                if event is not None:
                    collected.append(event)
            if calls >= self._calls_before_pause:
                log.info("Pausing %ds after %d event page calls", self._pause_seconds, calls)
                self._sleep(self._pause_seconds)
                calls = 0
            page += 1

        collected.reverse()
        return collected, newest if newest is not None else cursor

    def _search(self, params: list[tuple[str, Any]]) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        page = 1
        while True:
            data = self._client.get("beatmapsets/search", params=params + [("page", page)])
            batch = data.get("beatmapsets", [])
            results.extend(batch)
            if len(batch) < SEARCH_PAGE_SIZE:
                return results
            page += 1

    def recent_promotions(self, since: datetime) -> list[Item]:
        """Items promoted after *since*, ascending by promotion time."""
        raw = self._search([
            ("s", "ranked"),
            ("nsfw", "true"),
            ("q", f"ranked>{int(since.timestamp())}"),
        ])
        items = [
            Item(
                id=int(data["id"]),
                lane=_lane_of(data),
                ready_time=None,
                promote_time=parse_iso(data["ranked_date"]),
                title=data.get("title", ""),
                owner=data.get("creator", ""),
            )
            for data in raw
            if data.get("ranked_date")
        ]
        items.sort(key=lambda it: it.promote_time)  # type: ignore[arg-type, return-value]
        return items

    def pending_ids(self) -> list[int]:
        """Ids of every item currently waiting in the queue."""
        raw = self._search([("s", "qualified"), ("sort", "ranked_asc"), ("nsfw", "true")])
        return [int(data["id"]) for data in raw]

    def open_issue_ids(self) -> set[int]:
        """Ids of queued items that currently have an unresolved issue."""
        data = self._client.get(
            "beatmapsets/discussions",
            params=[
                ("beatmapset_status", "qualified"),
                ("message_types[]", "suggestion"),
                ("message_types[]", "problem"),
                ("only_unresolved", "true"),
                ("limit", 50),
            ],
        )
        return {int(b["id"]) for b in data.get("beatmapsets", [])}

    def has_open_issue(self, item_id: int) -> bool:
        data = self._client.get(
            "beatmapsets/discussions",
            params=[
                ("beatmapset_id", item_id),
                ("message_types[]", "suggestion"),
                ("message_types[]", "problem"),
                ("only_unresolved", "true"),
            ],
        )
        return len(data.get("discussions", [])) > 0


# ------------------------------------------------------------------
# Readiness
# ------------------------------------------------------------------


@dataclass(frozen=True)
class LifecycleRecord:
    """One entry of an item's own lifecycle history."""

    type: str
    time: datetime
    content_ids: frozenset[int] = field(default_factory=frozenset)
    approver_ids: frozenset[int] = field(default_factory=frozenset)
    user_id: int | None = None


def compute_ready_time(
    records: list[LifecycleRecord],
    anchor: datetime,
    content_ids: set[int] | frozenset[int],
    rules: Rules = DEFAULT_RULES,
    penalty_reset_rules: bool = True,
) -> datetime:
    """Earliest instant an item that entered the queue at *anchor* may be promoted.

    *records* is the item's lifecycle history, oldest first, using the
    lifecycle types plus ``nominate`` / ``nomination_reset`` endorsements.
    Time already spent queued before a withdrawal counts toward the
    minimum queued duration, but at least one day must pass after
    *anchor*.

    With *penalty_reset_rules*, a re-entry after a withdrawal:

    - forfeits the previously queued time if the approver set changed
      or new content was added since the withdrawal;
    - otherwise adds one penalty day per full week spent withdrawn,
      capped at ``rules.maximum_penalty_days``.

    Raises :class:`~rankwatch.lanes.InvariantViolation` when a withdrawal
    precedes its matching entry.
    """
    previous = timedelta(0)
    started: datetime | None = None
    last_withdraw: LifecycleRecord | None = None
    approvers: set[int] = set()
    penalty_days = 0

    for i, record in enumerate(records):
        if record.type == ENTER_QUEUE:
            started = record.time
            if penalty_reset_rules and i == len(records) - 1 and last_withdraw is not None:
                if set(last_withdraw.approver_ids) != approvers:
                    previous = timedelta(0)
                if set(content_ids) - set(last_withdraw.content_ids):
                    previous = timedelta(0)
                else:
                    weeks = (record.time - last_withdraw.time) / timedelta(weeks=1)
                    penalty_days = min(int(weeks), rules.maximum_penalty_days)
        elif record.type == WITHDRAW:
            last_withdraw = record
            if started is not None:
                queued = record.time - started
                if queued < timedelta(0):
                    raise InvariantViolation(
                        f"negative queued duration {queued} at {record.time}"
                    )
                previous += queued
            approvers = set()
        elif record.type == PROMOTE:
            previous = timedelta(0)
            started = None
        elif record.type == ENDORSE:
            if record.user_id is not None:
                approvers.add(record.user_id)
        elif record.type == ENDORSE_RESET:
            approvers = set()

    remaining = timedelta(days=rules.minimum_days) - previous
    return anchor + max(ONE_DAY, remaining) + timedelta(days=penalty_days)


def _record_from_api(data: dict[str, Any]) -> LifecycleRecord:
    comment = data.get("comment") or {}
    raw_type = data.get("type", "")
    return LifecycleRecord(
        type=EVENT_TYPE_MAP.get(raw_type, raw_type),
        time=parse_iso(data["created_at"]),
        content_ids=frozenset(comment.get("beatmap_ids") or []),
        approver_ids=frozenset(comment.get("nominator_ids") or []),
        user_id=data.get("user_id"),
    )


class ReadinessSource:
    """Builds queue items with their derived ``ready_time``.

    Parameters
    ----------
    client:
        :class:`ApiClient` (or anything with a compatible ``get``).
    config:
        rankwatch config dict (uses ``readiness.penalty_reset_rules``).
    rules:
        Promotion rules (minimum queued days, penalty cap).
    """

    def __init__(self, client: Any, config: dict[str, Any], rules: Rules = DEFAULT_RULES) -> None:
        self._client = client
        self._rules = rules
        self._penalty_rules = config.get("readiness", {}).get("penalty_reset_rules", True)

    def lifecycle(self, item_id: int) -> list[LifecycleRecord]:
        """The item's own lifecycle history, oldest first."""
        data = self._client.get(
            "beatmapsets/events",
            params=[
                ("types[]", "qualify"),
                ("types[]", "disqualify"),
                ("types[]", "rank"),
                ("types[]", ENDORSE),
                ("types[]", ENDORSE_RESET),
                ("beatmapset_id", item_id),
                ("limit", 50),
            ],
        )
        records = [_record_from_api(e) for e in data.get("events", [])]
        records.reverse()
        return records

    def build_item(self, item_id: int) -> Item:
        """Fetch *item_id* and derive its ``ready_time``.

        Raises
        ------
        FetchError
            If the item is not currently queued.
        """
        data = self._client.get(f"beatmapsets/{item_id}")
        if data.get("status") != "qualified" or not data.get("ranked_date"):
            raise FetchError(f"item {item_id} is not queued (status={data.get('status')})")

        anchor = parse_iso(data["ranked_date"])
        content_ids = {int(b["id"]) for b in data.get("beatmaps") or []}
        ready = compute_ready_time(
            self.lifecycle(item_id),
            anchor,
            content_ids,
            self._rules,
            self._penalty_rules,
        )
        log.info("Item %d ready at %s (queued %s)", item_id, ready.isoformat(), anchor.isoformat())
        return Item(
            id=int(data["id"]),
            lane=_lane_of(data),
            ready_time=ready,
            last_ready_anchor=anchor,
            title=data.get("title", ""),
            owner=data.get("creator", ""),
        )


def history_cutoff(config: dict[str, Any], now: datetime | None = None) -> datetime:
    """Oldest promotion instant still relevant to the daily cap."""
    hours = config["retention"]["history_hours"]
    return (now or utcnow()) - timedelta(hours=hours)
