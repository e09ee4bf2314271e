"""Typer CLI for Potluck."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from . import calendar_feed
from .calendar_feed import FeedError
from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .maintenance import purge_orphaned_uploads, vacuum_database
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import init_db, upgrade_database

app = typer.Typer(help="Potluck command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _exit_if_read_only(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure write access to {settings.database_path}.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        _exit_if_read_only(exc, "upgrade")
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("maintenance")
def maintenance(
    vacuum: bool = typer.Option(
        True, "--vacuum/--no-vacuum", help="Run SQLite VACUUM"
    ),
    sweep_uploads: bool = typer.Option(
        True,
        "--sweep-uploads/--no-sweep-uploads",
        help="Delete upload files no record refers to",
    ),
) -> None:
    """Run the scheduled maintenance jobs once."""
    init_db()
    if sweep_uploads:
        removed = purge_orphaned_uploads()
        typer.echo(f"Upload sweep complete: {removed} orphaned file(s) removed.")
    if vacuum:
        try:
            vacuum_database()
        except OperationalError as exc:
            _exit_if_read_only(exc, "vacuum")
            raise
        typer.echo("Database vacuum complete.")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    start_scheduler()
    config = uvicorn.Config(
        "potluck.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting Potluck on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("seed-data")
def seed_data(
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    max_rsvps: int = typer.Option(
        settings.seed_rsvps_per_event,
        "--max-rsvps",
        min=0,
        help="Maximum RSVPs to attach to each event",
    ),
):
    """Populate the store with fake events and RSVPs for testing."""
    stats = seed_fake_data(event_count=events, max_rsvps_per_event=max_rsvps)
    typer.echo(
        f"Seed complete: {stats['events']} events, {stats['rsvps']} RSVPs created."
    )


@app.command("calendar")
def calendar(
    url: str | None = typer.Option(
        None, "--url", help="Feed URL (defaults to calendar_feed_url)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print occurrences as JSON"),
):
    """Fetch the community feed and print its expanded occurrences."""
    try:
        occurrences = calendar_feed.load_occurrences(url)
    except FeedError as exc:
        typer.secho(f"Calendar feed error: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps([item.as_dict() for item in occurrences], indent=2))
        return
    zone = calendar_feed.resolve_zone()
    for heading, items in calendar_feed.group_by_month(occurrences, zone=zone):
        typer.secho(heading, bold=True)
        for item in items:
            when = item.start.astimezone(zone).strftime(
                "%a %b %d" if item.all_day else "%a %b %d %I:%M %p"
            )
            typer.echo(f"  {when}  {item.title} ({item.location})")


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    calendar_feed_url: str | None = typer.Option(
        None, "--calendar-feed-url", help="iCalendar feed shown on the calendar page"
    ),
    feed_timeout: float | None = typer.Option(
        None, "--feed-timeout", min=0.1, help="Seconds to wait for the calendar feed"
    ),
    display_timezone: str | None = typer.Option(
        None, "--display-timezone", help="IANA zone used to show times"
    ),
    calendar_window_years: int | None = typer.Option(
        None,
        "--calendar-window-years",
        min=0,
        help="Years ahead to expand recurring calendar events",
    ),
    store_backend: str | None = typer.Option(
        None, "--store-backend", help="Event/RSVP store: sql or json"
    ),
    upload_backend: str | None = typer.Option(
        None, "--upload-backend", help="Attachment storage: database or disk"
    ),
    recipe_max_bytes: int | None = typer.Option(
        None, "--recipe-max-bytes", min=1, help="Largest recipe upload accepted"
    ),
    shared_content_max_bytes: int | None = typer.Option(
        None,
        "--shared-content-max-bytes",
        min=1,
        help="Largest shared-content upload accepted",
    ),
    vacuum_hours: int | None = typer.Option(
        None, "--vacuum-hours", min=1, help="Hours between SQLite VACUUM runs"
    ),
    upload_sweep_hours: int | None = typer.Option(
        None, "--upload-sweep-hours", min=1, help="Hours between orphaned upload sweeps"
    ),
    seed_events: int | None = typer.Option(
        None, "--seed-events", min=0, help="Default seed-data events"
    ),
    seed_rsvps_per_event: int | None = typer.Option(
        None, "--seed-rsvps-per-event", min=0, help="Default seed-data RSVPs per event"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (vacuum/upload sweep)",
    ),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to potluck.toml (default: ./potluck.toml)"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "app_host": host,
        "app_port": port,
        "calendar_feed_url": calendar_feed_url,
        "feed_timeout_seconds": feed_timeout,
        "display_timezone": display_timezone,
        "calendar_window_years": calendar_window_years,
        "store_backend": store_backend,
        "upload_backend": upload_backend,
        "recipe_max_bytes": recipe_max_bytes,
        "shared_content_max_bytes": shared_content_max_bytes,
        "sqlite_vacuum_hours": vacuum_hours,
        "upload_sweep_hours": upload_sweep_hours,
        "seed_events": seed_events,
        "seed_rsvps_per_event": seed_rsvps_per_event,
        "enable_scheduler": enable_scheduler,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        try:
            settings_ref = update_config_file(clean_updates, path=target_path)
        except ValueError as exc:
            typer.secho(str(exc), err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


@app.command("test")
def run_tests(pytest_args: list[str] = typer.Argument(None, help="Extra pytest args")):
    """Run the test suite with helpful defaults."""
    env = os.environ.copy()
    env.setdefault("PYTHONPATH", ".")
    env.setdefault("UV_CACHE_DIR", ".uv-cache")
    uv_path = shutil.which("uv")
    if uv_path:
        cmd = [uv_path, "run", "pytest"]
    else:
        typer.echo("uv not found, falling back to python -m pytest")
        cmd = [sys.executable, "-m", "pytest"]
    if pytest_args:
        cmd.extend(pytest_args)
    typer.echo(f"Running tests: {' '.join(cmd)}")
    result = subprocess.run(cmd, env=env)
    raise typer.Exit(code=result.returncode)


if __name__ == "__main__":
    app()
