"""Cadence-tick arithmetic and the promotion rules shared by the engine.

The external batch process runs on a fixed wall-clock cadence aligned to
UTC (every 20 minutes by default).  All projected promotion instants are
snapped to that grid with :func:`ceil_to_tick`; saturation checks compare
ticks with :func:`floor_to_tick`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

ONE_DAY = timedelta(days=1)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Defaults mirror the external promotion process
RANK_PER_DAY = 16
RANK_PER_RUN = 2
RANK_INTERVAL_MINUTES = 20
MINIMUM_DAYS_FOR_RANK = 7
MAXIMUM_PENALTY_DAYS = 7
DELAY_MIN = 5  # seconds
DELAY_MAX = 120  # seconds
SPLIT = 0.5
PROBABILITY_PRECISION = 5
LANES = 4


@dataclass(frozen=True)
class Rules:
    """Tunable constants of the promotion model.

    Built from config via :func:`rankwatch.config.rules_from_config`; the
    defaults match the external process.
    """

    per_day: int = RANK_PER_DAY
    per_run: int = RANK_PER_RUN
    interval_minutes: int = RANK_INTERVAL_MINUTES
    minimum_days: int = MINIMUM_DAYS_FOR_RANK
    maximum_penalty_days: int = MAXIMUM_PENALTY_DAYS
    delay_min: float = DELAY_MIN
    delay_max: float = DELAY_MAX
    split: float = SPLIT
    probability_precision: int = PROBABILITY_PRECISION
    lanes: int = LANES

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.interval_minutes)


DEFAULT_RULES = Rules()


def floor_to_tick(when: datetime, rules: Rules = DEFAULT_RULES) -> datetime:
    """Return the tick boundary at or before *when*."""
    step = rules.interval
    return EPOCH + ((when - EPOCH) // step) * step


def ceil_to_tick(when: datetime, rules: Rules = DEFAULT_RULES) -> datetime:
    """Return the tick boundary at or after *when*."""
    step = rules.interval
    return EPOCH - ((EPOCH - when) // step) * step


def seconds_into_tick(when: datetime, rules: Rules = DEFAULT_RULES) -> float:
    """Seconds elapsed since the tick boundary preceding *when*."""
    return (when - floor_to_tick(when, rules)).total_seconds()


def is_tick_aligned(when: datetime, rules: Rules = DEFAULT_RULES) -> bool:
    return floor_to_tick(when, rules) == when


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def from_timestamp(value: float | None) -> datetime | None:
    """Convert epoch seconds (as stored) into an aware datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def to_timestamp(value: datetime | None) -> float | None:
    if value is None:
        return None
    return value.timestamp()


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) as aware UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
