"""CLI commands for stall-profiler."""

from pathlib import Path

import click


@click.group()
@click.version_option()
def main() -> None:
    """Find out what stalled an unresponsive process."""
    pass


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Output summary as JSON")
def analyze(path: Path, as_json: bool) -> None:
    """Aggregate a saved profile and show its dominant contributor.

    PATH is a JSON document with "ids", "deltas", "startTime" and "endTime".
    """
    import json

    from stall_profiler.aggregator import aggregate, load_profile
    from stall_profiler.formatting import format_micros, format_slice_table

    try:
        profile = load_profile(path)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    summary = aggregate(profile)
    if summary is None:
        if as_json:
            click.echo(json.dumps(None))
        else:
            click.echo("Nothing to report (no samples or empty capture).")
        return

    if as_json:
        click.echo(
            json.dumps(
                {
                    "duration": summary.duration,
                    "top": summary.top.to_dict(),
                    "prompt": summary.prompt_warranted,
                    "data": [s.to_dict() for s in summary.slices],
                },
                indent=2,
            )
        )
        return

    click.echo(f"Capture: {format_micros(summary.duration)}, {len(summary.slices)} contributors")
    click.echo()
    for row in format_slice_table(summary.slices, summary.top):
        click.echo(row)
    click.echo()
    click.echo(f"Top: {summary.top.id} ({summary.top.percentage}%)")
    if summary.prompt_warranted:
        click.echo("Severe: a single contributor held the process for the whole capture.")


@main.command()
@click.option("--limit", "-n", default=20, help="Number of events to show")
@click.option("--name", default=None, help="Only show events with this name")
def events(limit: int, name: str | None) -> None:
    """List recorded diagnostic events."""
    from datetime import datetime

    from stall_profiler.config import Config
    from stall_profiler.formatting import format_micros
    from stall_profiler.storage import (
        DatabaseNotAvailable,
        get_diagnostic_events,
        require_database,
    )

    config = Config.load()

    try:
        with require_database(config.db_path) as conn:
            events_list = get_diagnostic_events(conn, name=name, limit=limit)
    except DatabaseNotAvailable:
        return

    if not events_list:
        click.echo("No events recorded.")
        return

    click.echo(f"{'Time':19}  {'Event':26}  {'Episode':36}  {'Details'}")
    click.echo("-" * 100)
    for event in events_list:
        logged = datetime.fromtimestamp(event["logged_at"]).strftime("%Y-%m-%d %H:%M:%S")
        payload = event["payload"]
        details = ""
        if "duration" in payload:
            top = max(payload.get("data", []), key=lambda s: s["percentage"], default=None)
            details = format_micros(payload["duration"])
            if top:
                details += f", {top['id']} {top['percentage']}%"
            if payload.get("prompt"):
                details += ", prompted"
        click.echo(f"{logged:19}  {event['name']:26}  {event['episode_id'] or '':36}  {details}")


@main.command()
def artifacts() -> None:
    """List saved CPU profile artifacts."""
    from datetime import datetime

    from stall_profiler.artifacts import ArtifactStore
    from stall_profiler.config import Config

    config = Config.load()
    store = ArtifactStore(
        config.artifacts.path, config.artifacts.prefix, config.artifacts.extension
    )

    paths = store.list_artifacts()
    if not paths:
        click.echo(f"No profiles in {store.directory}")
        return

    for p in paths:
        stat = p.stat()
        modified = datetime.fromtimestamp(stat.st_mtime).strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"{modified}  {stat.st_size:>10}  {p}")


@main.command()
@click.option("--days", default=None, type=int, help="Override retention days")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
def prune(days: int | None, force: bool) -> None:
    """Delete old diagnostic events."""
    from stall_profiler import logging as console
    from stall_profiler.config import Config
    from stall_profiler.storage import get_connection, prune_old_events

    config = Config.load()

    if not config.db_path.exists():
        click.echo("Database not found. No diagnostic events have been recorded yet.")
        return

    days = days or config.telemetry.retention_days
    if not force:
        click.confirm(f"Delete events older than {days} days?", abort=True)

    conn = get_connection(config.db_path)
    try:
        deleted = prune_old_events(conn, retention_days=days)
    finally:
        conn.close()

    console.events_pruned(deleted)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from dataclasses import fields

    from stall_profiler.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    for section in ("artifacts", "alerts", "telemetry", "system"):
        values = getattr(cfg, section)
        click.echo()
        click.echo(f"[{section}]")
        for f in fields(values):
            click.echo(f"  {f.name} = {getattr(values, f.name)!r}")


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from stall_profiler import logging as console
    from stall_profiler.config import Config

    cfg = Config()
    cfg.save()
    console.config_created(str(cfg.config_path))
