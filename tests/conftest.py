"""Shared pytest fixtures for congregate."""

from __future__ import annotations

import dataclasses
import itertools
import sys
from datetime import time, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from congregate import api, config, crud, database, storage
from congregate.models import Base, User
from congregate.preferences import InMemoryPreferenceCache
from congregate.realtime import Broadcaster
from congregate.services import build_services, set_services
from congregate.tasks import TaskRunner
from congregate.utils import utcnow

# Downtown Dallas; one degree of latitude is roughly 69.1 miles.
CENTER = (32.7767, -96.7970)
MILES_PER_DEGREE_LAT = 69.09


def north_of(miles: float) -> tuple[float, float]:
    return CENTER[0] + miles / MILES_PER_DEGREE_LAT, CENTER[1]


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


class RecordingTransport:
    """Push transport that records sends and fails for chosen tokens."""

    def __init__(self):
        self.sent: list[tuple[str, str, str, dict | None]] = []
        self.failing: set[str] = set()
        self.raising: set[str] = set()

    def send(self, token, title, body, payload) -> bool:
        if token in self.raising:
            raise ConnectionError("provider unreachable")
        if token in self.failing:
            return False
        self.sent.append((token, title, body, payload))
        return True


@pytest.fixture()
def transport():
    return RecordingTransport()


@pytest.fixture()
def broadcasts():
    return []


@pytest.fixture()
def make_services(transport, broadcasts):
    """Build inline services; keyword arguments override settings."""

    created = []

    def _make(**overrides):
        settings = dataclasses.replace(config.settings, **overrides)
        broadcaster = Broadcaster()
        broadcaster.subscribe(lambda target, name, payload: broadcasts.append((target, name, payload)))
        svc = build_services(
            settings,
            runner=TaskRunner(max_workers=0),
            cache=InMemoryPreferenceCache(ttl_seconds=300),
            transport=transport,
            broadcaster=broadcaster,
        )
        created.append(svc)
        set_services(svc)
        return svc

    previous = set_services(None)
    yield _make
    set_services(previous)


@pytest.fixture()
def services(make_services):
    return make_services(popularity_threshold=20, proximity_radius_miles=30.0)


@pytest.fixture()
def make_user():
    counter = itertools.count(1)

    def _make(username: str | None = None, *, near: float | None = None, **kwargs) -> User:
        if near is not None:
            kwargs["latitude"], kwargs["longitude"] = north_of(near)
        with database.get_session() as session:
            return crud.create_user(
                session, username=username or f"member{next(counter)}", **kwargs
            )

    return _make


@pytest.fixture()
def make_event():
    def _make(host: User, *, days_from_now: int = 7, located: bool = True, **kwargs):
        day = (utcnow() + timedelta(days=days_from_now)).date()
        kwargs.setdefault("title", "Community Potluck")
        kwargs.setdefault("start_time", time(18, 0))
        kwargs.setdefault("end_time", time(20, 0))
        if located:
            kwargs.setdefault("latitude", CENTER[0])
            kwargs.setdefault("longitude", CENTER[1])
        with database.get_session() as session:
            host = session.get(User, host.id)
            return crud.create_event(session, host=host, event_date=day, **kwargs)

    return _make


@pytest.fixture()
def client(monkeypatch, services):
    """FastAPI test client with the scheduler disabled."""

    from fastapi.testclient import TestClient

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client
