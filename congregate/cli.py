"""Typer CLI for congregate."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .services import get_services, shutdown_services
from .storage import init_db, upgrade_database

app = typer.Typer(help="congregate command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("expire-invitations")
def expire_invitations() -> None:
    """Expire pending invitations for events that ended or were canceled."""
    init_db()
    expired = get_services().invitations.expire_stale_invitations()
    typer.echo(f"Expired {expired} invitation(s).")


@app.command("send-reminders")
def send_reminders() -> None:
    """Send due 24h and 1h reminders to event attendees."""
    init_db()
    sent = get_services().reminders.send_due_reminders()
    typer.echo(f"Sent 24h reminders for {sent['24h']} event(s), 1h reminders for {sent['1h']}.")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    start_scheduler()
    config = uvicorn.Config(
        "congregate.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting congregate on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()
        shutdown_services(wait=True)


@app.command("seed-data")
def seed_data(
    users: int = typer.Option(settings.seed_users, "--users", min=1, help="Number of users to create"),
    communities: int = typer.Option(
        settings.seed_communities, "--communities", min=0, help="Number of communities to create"
    ),
    events: int = typer.Option(settings.seed_events, "--events", min=0, help="Number of events to create"),
):
    """Populate the database with fake users, communities and events."""
    stats = seed_fake_data(user_count=users, community_count=communities, event_count=events)
    typer.echo(
        f"Seed complete: {stats['users']} users, {stats['communities']} communities, "
        f"{stats['events']} events, {stats['rsvps']} RSVPs, {stats['follows']} follows created."
    )


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    threshold: int | None = typer.Option(
        None, "--threshold", min=1, help="Going RSVPs that make an event popular"
    ),
    proximity_radius: float | None = typer.Option(
        None, "--proximity-radius", min=0.0, help="Miles covered by the popular-event alert"
    ),
    invite_radius: float | None = typer.Option(
        None, "--invite-radius", min=0.0, help="Default invite-nearby radius in miles"
    ),
    cache_ttl: int | None = typer.Option(
        None, "--cache-ttl", min=1, help="Preference cache TTL in seconds"
    ),
    cache_backend: str | None = typer.Option(
        None, "--cache-backend", help="Preference cache backend: memory or redis"
    ),
    redis_url: str | None = typer.Option(None, "--redis-url", help="Redis URL for the cache"),
    push_backend: str | None = typer.Option(
        None, "--push-backend", help="Push transport: log or expo"
    ),
    push_timeout: float | None = typer.Option(
        None, "--push-timeout", min=0.1, help="Per-device push timeout in seconds"
    ),
    workers: int | None = typer.Option(
        None, "--workers", min=0, help="Background notification workers (0 runs inline)"
    ),
    sweep_minutes: int | None = typer.Option(
        None, "--sweep-minutes", min=1, help="Minutes between invitation expiry sweeps"
    ),
    reminder_minutes: int | None = typer.Option(
        None, "--reminder-minutes", min=1, help="Minutes between event reminder checks"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (invitation sweep, event reminders)",
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to congregate.toml (default: ./congregate.toml)"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "popularity_threshold": threshold,
        "proximity_radius_miles": proximity_radius,
        "default_invite_radius_miles": invite_radius,
        "preference_cache_ttl_seconds": cache_ttl,
        "cache_backend": cache_backend,
        "redis_url": redis_url,
        "push_backend": push_backend,
        "push_timeout_seconds": push_timeout,
        "notification_workers": workers,
        "invitation_sweep_minutes": sweep_minutes,
        "reminder_sweep_minutes": reminder_minutes,
        "enable_scheduler": enable_scheduler,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    settings_ref = settings
    target_path = config_path or settings.config_path
    if clean_updates:
        try:
            settings_ref = update_config_file(clean_updates, path=target_path)
        except ValueError as exc:
            typer.secho(f"Invalid configuration: {exc}", err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
