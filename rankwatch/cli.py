"""CLI entry point for rankwatch."""

from __future__ import annotations

import logging
from pathlib import Path

import click


# Default config template
CONFIG_TEMPLATE = """\
lanes: 4  # one queue per game mode

ranking:
  per_day: 16
  per_run: 2
  interval_minutes: 20
  minimum_days: 7
  maximum_penalty_days: 7

probability:
  delay_min: 5  # seconds after the tick
  delay_max: 120
  split: 0.5
  precision: 5

polling:
  interval: 300  # seconds between baseline passes
  burst_interval: 5
  burst_horizon_minutes: 10
  burst_min_probability: 0.01  # lowest early chance worth a burst
  issue_recheck_minutes: 60
  snapshot_hours: 12

retention:
  history_hours: 25
  settled_days: 7

readiness:
  penalty_reset_rules: true

api:
  base_url: https://osu.ppy.sh
  client_id_env: RANKWATCH_CLIENT_ID
  client_secret_env: RANKWATCH_CLIENT_SECRET
"""

PROJECT_ROOT = click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load(root: Path) -> dict:
    from rankwatch.config import ConfigError, load_config

    try:
        return load_config(root)
    except ConfigError as exc:
        click.echo(f"Error: {exc}")
        raise SystemExit(1)


def _fmt(when: object) -> str:
    return when.strftime("%Y-%m-%d %H:%M") if when is not None else "-"  # type: ignore[attr-defined]


@click.group()
def cli() -> None:
    """rankwatch: projected promotion times for queued items."""


@cli.command()
@PROJECT_ROOT
def init(project_root: str) -> None:
    """Initialize .rankwatch/ directory with config and an empty store."""
    root = Path(project_root)
    rankwatch_dir = root / ".rankwatch"

    if rankwatch_dir.exists():
        click.echo(f".rankwatch/ already exists at {rankwatch_dir}")
        raise SystemExit(1)

    rankwatch_dir.mkdir(parents=True)
    config_path = rankwatch_dir / "config.yaml"
    config_path.write_text(CONFIG_TEMPLATE)
    click.echo(f"Created {config_path}")

    # Validate the template through the standard path
    _load(root)

    from rankwatch.config import db_path
    from rankwatch.server.db import ServerDB

    ServerDB(db_path(root))
    click.echo(f"Created {db_path(root)}")

    click.echo(
        "\nrankwatch initialized. Set RANKWATCH_CLIENT_ID and "
        "RANKWATCH_CLIENT_SECRET, then run 'rankwatch run'."
    )


@cli.command()
@PROJECT_ROOT
def run(project_root: str) -> None:
    """Run the rankwatch server (foreground)."""
    from rankwatch.server import run_server

    _setup_logging()

    root = Path(project_root)
    config = _load(root)
    click.echo(f"Starting rankwatch server for {root}...")
    run_server(config, root)


@cli.command()
@PROJECT_ROOT
def update(project_root: str) -> None:
    """Apply new events once against the stored state and exit."""
    from rankwatch.server import run_once

    _setup_logging()

    root = Path(project_root)
    config = _load(root)
    result = run_once(config, root)

    if result is None:
        click.echo("Initial load complete.")
        return
    click.echo(
        f"{result.events} event(s): {len(result.updated)} updated, "
        f"{len(result.deleted)} deleted, cursor at {result.last_event_id}"
    )
    if result.failed:
        click.echo(f"Failed events: {', '.join(str(i) for i in result.failed)}")
        raise SystemExit(1)


@cli.command()
@PROJECT_ROOT
@click.option("--dry-run", is_flag=True, help="Show changes without writing them.")
def recalculate(project_root: str, dry_run: bool) -> None:
    """Re-project every lane from the stored state."""
    from rankwatch.server import recalculate_stored

    _setup_logging()

    root = Path(project_root)
    config = _load(root)
    changed = recalculate_stored(config, root, dry_run=dry_run)

    verb = "Would update" if dry_run else "Updated"
    click.echo(f"{verb} {len(changed)} item(s)")
    for item in changed:
        click.echo(
            f"  {item.id}: promote {_fmt(item.promote_time)}, "
            f"early {_fmt(item.early_time)}, p={item.probability}"
        )


@cli.command()
@PROJECT_ROOT
@click.argument("item_id", type=int)
def insert(project_root: str, item_id: int) -> None:
    """Load one item by id into the stored queue."""
    from rankwatch.server import insert_item
    from rankwatch.server.sources import FetchError

    _setup_logging()

    root = Path(project_root)
    config = _load(root)
    try:
        item, changed = insert_item(config, root, item_id)
    except FetchError as exc:
        click.echo(f"Error: {exc}")
        raise SystemExit(1)

    where = "pending" if item.is_pending else "promoted"
    click.echo(f"Inserted {item.id} into lane {item.lane} ({where})")
    click.echo(f"{len(changed)} item(s) updated")


@cli.command()
@PROJECT_ROOT
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
def reset(project_root: str, yes: bool) -> None:
    """Wipe the store and reload the queue from the API."""
    from rankwatch.server import reset_store

    root = Path(project_root)
    config = _load(root)
    if not yes:
        click.confirm("Delete every stored item and reload?", abort=True)

    _setup_logging()
    pending = reset_store(config, root)
    click.echo(f"Reloaded {pending} pending item(s)")


@cli.command()
@PROJECT_ROOT
def status(project_root: str) -> None:
    """Show rankwatch server status."""
    from rankwatch.server import get_status

    root = Path(project_root)
    config = _load(root)
    info = get_status(config, root)

    if "error" in info:
        click.echo(f"Error: {info['error']}")
        raise SystemExit(1)

    items = info["items"]
    click.echo("Items:")
    click.echo(f"  Pending: {items['pending']}")
    click.echo(f"  Promoted: {items['promoted']}")

    state = info.get("server_state", {})
    click.echo(f"\nEvent cursor: {state.get('last_event_id') or 'not set'}")
    if state.get("last_poll_time"):
        click.echo(f"Last poll: {state['last_poll_time']}")
    if state.get("last_snapshot_time"):
        click.echo(f"Last snapshot: {state['last_snapshot_time']}")

    recent = info.get("recent_updates", [])
    if recent:
        click.echo(f"\nRecent updates ({len(recent)}):")
        for u in recent:
            click.echo(
                f"  #{u['id']} {u['created_at']}: "
                f"{len(u['updated_ids'])} updated, {len(u['deleted_ids'])} deleted"
            )
    else:
        click.echo("\nNo updates yet.")


@cli.command()
@PROJECT_ROOT
@click.option("--lane", type=int, default=None, help="Only show this lane.")
def queue(project_root: str, lane: int | None) -> None:
    """Print projected promotion times per lane."""
    from rankwatch.server import get_queue

    root = Path(project_root)
    config = _load(root)
    lanes = get_queue(config, root)

    if not lanes:
        click.echo("No database found. Run 'rankwatch init' first.")
        raise SystemExit(1)

    for index, queue_ in enumerate(lanes):
        if lane is not None and index != lane:
            continue
        click.echo(f"Lane {index} ({len(queue_.pending)} pending, {len(queue_.history)} recent):")
        for item in queue_.pending:
            flag = " [open issue]" if item.has_open_issue else ""
            chance = f"{item.probability:.0%}" if item.probability is not None else "-"
            click.echo(
                f"  {item.id:>8}  ready {_fmt(item.ready_time)}  "
                f"promote {_fmt(item.promote_time)}  "
                f"early {_fmt(item.early_time)} ({chance}){flag}  {item.title}"
            )
