"""Database initialization and schema upgrades."""

from __future__ import annotations

import shutil
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from .config import settings
from .database import engine


def init_db() -> None:
    upgrade_database(make_backup=False)


def ensure_schema_updates() -> list[str]:
    """Patch pre-migration SQLite databases that predate later columns."""
    actions: list[str] = []
    if engine.dialect.name != "sqlite":
        return actions

    inspector = inspect(engine)
    if inspector.has_table("rsvps"):
        columns = {col["name"] for col in inspector.get_columns("rsvps")}
        if "confirmed_at" not in columns:
            with engine.begin() as conn:
                conn.exec_driver_sql("ALTER TABLE rsvps ADD COLUMN confirmed_at DATETIME")
            actions.append("Added rsvps.confirmed_at column")
    if inspector.has_table("events"):
        columns = {col["name"] for col in inspector.get_columns("events")}
        if "popularity_notified_at" not in columns:
            with engine.begin() as conn:
                conn.exec_driver_sql(
                    "ALTER TABLE events ADD COLUMN popularity_notified_at DATETIME"
                )
            actions.append("Added events.popularity_notified_at column")
        # Tracked databases get these from revision 0002.
        if not inspector.has_table("alembic_version"):
            for column in ("reminder_24h_sent_at", "reminder_1h_sent_at"):
                if column not in columns:
                    with engine.begin() as conn:
                        conn.exec_driver_sql(f"ALTER TABLE events ADD COLUMN {column} DATETIME")
                    actions.append(f"Added events.{column} column")
    return actions


def _alembic_config() -> Config:
    package_dir = Path(__file__).resolve().parent
    script_location = package_dir / "alembic"
    ini_path = script_location.parent / "alembic.ini"

    config = Config(str(ini_path)) if ini_path.exists() else Config()
    config.set_main_option("script_location", str(script_location))
    # Config values go through configparser interpolation.
    url = engine.url.render_as_string(hide_password=False)
    config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return config


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Upgrade the database schema in-place.

    Returns a list of applied actions; empty if already up-to-date.
    """
    actions: list[str] = []
    db_path = Path(settings.database_path)

    if make_backup and not settings.database_url and db_path.exists():
        backup_path = db_path.with_suffix(db_path.suffix + ".bak")
        shutil.copy(db_path, backup_path)
        actions.append(f"Backup created at {backup_path}")

    inspector = inspect(engine)
    has_alembic = inspector.has_table("alembic_version")
    has_events = inspector.has_table("events")
    config = _alembic_config()

    actions.extend(ensure_schema_updates())

    if not has_alembic and not has_events:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif not has_alembic:
        # Tables exist but were never tracked: baseline them.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")

    return actions
