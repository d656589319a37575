from __future__ import annotations

import types

import pytest
from alembic import command
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from congregate import database, storage
from congregate.models import Base

HEAD_REVISION = "0002_event_reminders"


def _patch_db(monkeypatch: pytest.MonkeyPatch, engine: Engine, db_path) -> None:
    monkeypatch.setattr(storage, "engine", engine)
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(
        database, "DATABASE_URL", engine.url.render_as_string(hide_password=False)
    )
    fake_settings = types.SimpleNamespace(database_path=db_path, database_url="")
    monkeypatch.setattr(storage, "settings", fake_settings)


def _get_version(engine: Engine) -> str | None:
    with engine.connect() as conn:
        try:
            return conn.execute(
                text("select version_num from alembic_version")
            ).scalar()
        except Exception:
            return None


def test_upgrade_database_stamps_existing_db(monkeypatch, tmp_path):
    db_path = tmp_path / "existing.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(bind=engine)  # existing schema without Alembic tracking
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=False)

    assert "Stamped existing database to Alembic head" in actions
    assert _get_version(engine) == HEAD_REVISION


def test_upgrade_database_creates_fresh_schema(monkeypatch, tmp_path):
    db_path = tmp_path / "fresh.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=False)

    assert "Ran Alembic upgrade to head (fresh database)" in actions
    assert _get_version(engine) == HEAD_REVISION
    inspector = inspect(engine)
    for table in ("users", "events", "rsvps", "event_invitations", "user_follows", "notifications"):
        assert inspector.has_table(table)
    assert {col["name"] for col in inspector.get_columns("events")} >= {
        "popularity_notified_at",
        "canceled_at",
        "reminder_24h_sent_at",
        "reminder_1h_sent_at",
    }


def test_upgrade_database_is_idempotent_and_backs_up(monkeypatch, tmp_path):
    db_path = tmp_path / "repeat.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)
    storage.upgrade_database(make_backup=False)

    actions = storage.upgrade_database(make_backup=True)

    assert actions[0].startswith("Backup created at")
    assert "Applied Alembic migrations to head" in actions
    assert (tmp_path / "repeat.sqlite.bak").exists()


def test_schema_updates_add_missing_columns(monkeypatch, tmp_path):
    db_path = tmp_path / "legacy.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    with engine.begin() as conn:
        conn.exec_driver_sql("CREATE TABLE rsvps (id VARCHAR(36) PRIMARY KEY, status VARCHAR(16))")
        conn.exec_driver_sql("CREATE TABLE events (id VARCHAR(36) PRIMARY KEY, title VARCHAR(200))")
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.ensure_schema_updates()

    assert actions == [
        "Added rsvps.confirmed_at column",
        "Added events.popularity_notified_at column",
        "Added events.reminder_24h_sent_at column",
        "Added events.reminder_1h_sent_at column",
    ]
    assert storage.ensure_schema_updates() == []


def test_upgrade_database_handles_percent_in_url(monkeypatch, tmp_path):
    db_path = tmp_path / "100%attendance.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)
    rendered = engine.url.render_as_string(hide_password=False)

    assert "%" in rendered
    assert storage._alembic_config().get_main_option("sqlalchemy.url") == rendered

    actions = storage.upgrade_database(make_backup=False)

    assert "Ran Alembic upgrade to head (fresh database)" in actions
    assert _get_version(engine) == HEAD_REVISION


def test_upgrade_database_on_in_memory_engine(monkeypatch, tmp_path):
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    _patch_db(monkeypatch, engine, tmp_path / "unused.sqlite")

    actions = storage.upgrade_database(make_backup=False)

    assert "Ran Alembic upgrade to head (fresh database)" in actions
    assert inspect(engine).has_table("rsvps")


def test_upgrade_from_initial_revision_adds_reminder_columns(monkeypatch, tmp_path):
    db_path = tmp_path / "tracked.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)
    command.upgrade(storage._alembic_config(), "0001_initial")

    actions = storage.upgrade_database(make_backup=False)

    assert actions == ["Applied Alembic migrations to head"]
    assert _get_version(engine) == HEAD_REVISION
    columns = {col["name"] for col in inspect(engine).get_columns("events")}
    assert {"reminder_24h_sent_at", "reminder_1h_sent_at"} <= columns
