"""Load and validate .rankwatch/config.yaml."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from rankwatch.cadence import Rules


# Default config values
DEFAULTS: dict[str, Any] = {
    "lanes": 4,
    "ranking": {
        "per_day": 16,
        "per_run": 2,
        "interval_minutes": 20,
        "minimum_days": 7,
        "maximum_penalty_days": 7,
    },
    "probability": {
        "delay_min": 5,
        "delay_max": 120,
        "split": 0.5,
        "precision": 5,
    },
    "polling": {
        "interval": 300,
        "burst_interval": 5,
        "burst_horizon_minutes": 10,
        "burst_min_probability": 0.01,
        "burst_base_minutes": 8,
        "burst_per_item_minutes": 2,
        "burst_max_minutes": 12,
        "issue_recheck_minutes": 60,
        "snapshot_hours": 12,
        "page_limit": 5,
        "calls_before_pause": 30,
        "pause_seconds": 60,
    },
    "retention": {
        "history_hours": 25,
        "settled_days": 7,
    },
    "readiness": {
        "penalty_reset_rules": True,
    },
    "api": {
        "base_url": "https://osu.ppy.sh",
        "client_id_env": "RANKWATCH_CLIENT_ID",
        "client_secret_env": "RANKWATCH_CLIENT_SECRET",
        "timeout": 30,
        "max_retries": 3,
        "backoff_seconds": 2,
        "min_request_interval": 1.0,
    },
}

POSITIVE_INT_KEYS = {
    "ranking": ("per_day", "per_run", "interval_minutes", "minimum_days"),
    "polling": ("interval", "burst_interval", "page_limit", "calls_before_pause"),
    "retention": ("history_hours", "settled_days"),
}


class ConfigError(Exception):
    """Raised when config is invalid or missing."""


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into base recursively. Override wins on conflicts."""
    result = base.copy()
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _validate(config: dict) -> None:
    """Validate required fields in config."""
    lanes = config.get("lanes")
    if not isinstance(lanes, int) or isinstance(lanes, bool) or lanes < 1:
        raise ConfigError(f"'lanes' must be a positive integer, got {lanes!r}")

    for section, keys in POSITIVE_INT_KEYS.items():
        values = config.get(section)
        if not isinstance(values, dict):
            raise ConfigError(f"'{section}' must be a mapping")
        for key in keys:
            val = values.get(key)
            if not isinstance(val, int) or isinstance(val, bool) or val < 1:
                raise ConfigError(
                    f"'{section}.{key}' must be a positive integer, got {val!r}"
                )

    probability = config.get("probability")
    if not isinstance(probability, dict):
        raise ConfigError("'probability' must be a mapping")
    delays = (probability.get("delay_min"), probability.get("delay_max"))
    if not all(isinstance(d, (int, float)) for d in delays) or not 0 <= delays[0] < delays[1]:
        raise ConfigError(
            "'probability.delay_min' must be >= 0 and below 'probability.delay_max'"
        )
    split = probability.get("split")
    if not isinstance(split, (int, float)) or not 0 <= split <= 1:
        raise ConfigError(f"'probability.split' must be within [0, 1], got {split!r}")

    floor = config["polling"].get("burst_min_probability")
    if not isinstance(floor, (int, float)) or isinstance(floor, bool) or not 0 <= floor <= 1:
        raise ConfigError(
            f"'polling.burst_min_probability' must be within [0, 1], got {floor!r}"
        )


def load_config(project_root: Path | None = None) -> dict:
    """Load config from .rankwatch/config.yaml under project_root.

    Falls back to cwd if project_root is None. Merges with DEFAULTS
    so callers always get a full config dict.
    """
    root = Path(project_root) if project_root else Path.cwd()
    config_path = root / ".rankwatch" / "config.yaml"

    if not config_path.exists():
        raise ConfigError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping, got {type(raw).__name__}")

    config = _deep_merge(DEFAULTS, raw)
    _validate(config)
    return config


def rules_from_config(config: dict) -> Rules:
    """Build the promotion :class:`Rules` from a loaded config."""
    ranking = config["ranking"]
    probability = config["probability"]
    return Rules(
        per_day=ranking["per_day"],
        per_run=ranking["per_run"],
        interval_minutes=ranking["interval_minutes"],
        minimum_days=ranking["minimum_days"],
        maximum_penalty_days=ranking["maximum_penalty_days"],
        delay_min=probability["delay_min"],
        delay_max=probability["delay_max"],
        split=probability["split"],
        probability_precision=probability["precision"],
        lanes=config["lanes"],
    )


def db_path(project_root: Path) -> Path:
    """Location of the SQLite state store under *project_root*."""
    return project_root / ".rankwatch" / "rankwatch.db"
