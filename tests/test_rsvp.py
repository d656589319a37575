from __future__ import annotations

import itertools
import logging
import threading

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import scoped_session, sessionmaker

from congregate import database, rsvp as rsvp_module
from congregate.errors import NotFoundError, StateConflictError, ValidationError
from congregate.models import RSVP, Base, Event, Notification


def _popular_notifications() -> list[Notification]:
    with database.get_session() as session:
        records = session.scalars(select(Notification)).all()
    return [n for n in records if (n.payload or {}).get("type") == "event_popular"]


def _rsvp_rows(event_id: str) -> int:
    with database.get_session() as session:
        return session.scalar(select(func.count(RSVP.id)).where(RSVP.event_id == event_id))


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("going", "going"),
        ("Attending", "going"),
        ("yes", "going"),
        ("interested", "maybe"),
        ("maybe", "maybe"),
        ("declined", "not_going"),
        (" not_going ", "not_going"),
    ],
)
def test_normalize_status_maps_legacy_values(raw, expected):
    assert rsvp_module.normalize_status(raw) == expected


def test_normalize_status_rejects_unknown_values():
    with pytest.raises(ValidationError) as excinfo:
        rsvp_module.normalize_status("perhaps")
    assert excinfo.value.code == "INVALID_STATUS"


def test_set_rsvp_twice_keeps_one_row_and_reports_no_change(services, make_user, make_event):
    host = make_user("host")
    guest = make_user("guest")
    event = make_event(host)

    first = services.ledger.set_rsvp(event.id, guest.id, "going")
    second = services.ledger.set_rsvp(event.id, guest.id, "going")

    assert first.changed is True
    assert first.previous_status is None
    assert second.changed is False
    assert second.crossed is False
    assert _rsvp_rows(event.id) == 1


def test_set_rsvp_overwrites_status(services, make_user, make_event):
    host = make_user("host")
    guest = make_user("guest")
    event = make_event(host)

    services.ledger.set_rsvp(event.id, guest.id, "maybe")
    outcome = services.ledger.set_rsvp(event.id, guest.id, "going")

    assert outcome.previous_status == "maybe"
    assert outcome.status == "going"
    assert outcome.counts == {"going": 1, "maybe": 0, "not_going": 0}
    assert _rsvp_rows(event.id) == 1


def test_invalid_status_is_rejected_before_any_write(services, make_user, make_event):
    host = make_user("host")
    event = make_event(host)

    with pytest.raises(ValidationError):
        services.ledger.set_rsvp(event.id, host.id, "sure")
    assert _rsvp_rows(event.id) == 0


def test_rsvp_to_missing_or_canceled_event(services, make_user, make_event):
    host = make_user("host")
    event = make_event(host)
    with database.get_session() as session:
        stored = session.get(Event, event.id)
        stored.status = "canceled"

    with pytest.raises(NotFoundError) as missing:
        services.ledger.set_rsvp("no-such-event", host.id, "going")
    assert missing.value.code == "EVENT_NOT_FOUND"

    with pytest.raises(StateConflictError) as canceled:
        services.ledger.set_rsvp(event.id, host.id, "going")
    assert canceled.value.code == "EVENT_CANCELED"


def test_crossing_threshold_fans_out_once_to_nearby_non_attendees(
    services, make_user, make_event
):
    host = make_user("host", near=0)
    event = make_event(host, title="Harvest Festival")
    attendees = [make_user() for _ in range(18)]
    nearby_attendee = make_user("nearby_attendee", near=2)
    attendees.append(nearby_attendee)
    for attendee in attendees:
        services.ledger.set_rsvp(event.id, attendee.id, "going")
    neighbour = make_user("neighbour", near=10)
    make_user("far_away", near=150)
    latecomer = make_user("latecomer")

    outcome = services.ledger.set_rsvp(event.id, latecomer.id, "going")

    assert outcome.attending_before == 19
    assert outcome.attending_after == 20
    assert outcome.crossed and outcome.claimed
    popular = _popular_notifications()
    assert [n.user_id for n in popular] == [neighbour.id]
    assert popular[0].category == "event"
    assert popular[0].payload["eventId"] == event.id
    with database.get_session() as session:
        assert session.get(Event, event.id).popularity_notified_at is not None

    # Dropping below and rising again never re-triggers.
    services.ledger.set_rsvp(event.id, attendees[0].id, "maybe")
    services.ledger.set_rsvp(event.id, attendees[0].id, "not_going")
    again = services.ledger.set_rsvp(event.id, attendees[0].id, "going")
    assert again.crossed is True
    assert again.claimed is False
    assert len(_popular_notifications()) == 1


def test_crossing_without_coordinates_is_logged_not_fanned_out(
    make_services, make_user, make_event, caplog
):
    svc = make_services(popularity_threshold=2)
    host = make_user("host")
    event = make_event(host, located=False)
    make_user("neighbour", near=1)
    first, second = make_user(), make_user()

    svc.ledger.set_rsvp(event.id, first.id, "going")
    with caplog.at_level(logging.INFO, logger="congregate.rsvp"):
        outcome = svc.ledger.set_rsvp(event.id, second.id, "going")

    assert outcome.claimed is True
    assert "no coordinates" in caplog.text
    assert _popular_notifications() == []


def test_overlapping_crossings_claim_the_marker_once(
    make_services, make_user, make_event, monkeypatch
):
    svc = make_services(popularity_threshold=3)
    host = make_user("host")
    event = make_event(host)
    guests = [make_user() for _ in range(5)]

    # Every writer observes the same stale "before" count, as concurrent
    # transactions would.
    reads = itertools.count()
    monkeypatch.setattr(
        rsvp_module,
        "attending_count",
        lambda session, event_id: 2 if next(reads) % 2 == 0 else 3,
    )
    fanouts = []
    monkeypatch.setattr(svc.monitor, "fan_out_popular_event", fanouts.append)

    outcomes = [svc.ledger.set_rsvp(event.id, guest.id, "going") for guest in guests]

    assert all(outcome.crossed for outcome in outcomes)
    assert sum(outcome.claimed for outcome in outcomes) == 1
    assert fanouts == [event.id]


def test_claim_popularity_succeeds_only_once(make_user, make_event):
    host = make_user("host")
    event = make_event(host)

    with database.get_session() as session:
        assert rsvp_module.claim_popularity(session, event.id) is True
    with database.get_session() as session:
        assert rsvp_module.claim_popularity(session, event.id) is False


@pytest.fixture()
def file_database(monkeypatch, tmp_path):
    """Point sessions at a file-backed SQLite so each thread gets its own connection."""

    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.sqlite'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    session_factory = scoped_session(
        sessionmaker(bind=engine, autoflush=False, future=True, expire_on_commit=False)
    )
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "SessionLocal", session_factory)
    yield engine
    session_factory.remove()
    engine.dispose()


def test_concurrent_claims_on_separate_connections_have_one_winner(
    file_database, make_user, make_event
):
    event = make_event(make_user("host"))
    workers = 8
    barrier = threading.Barrier(workers)
    results: list[bool] = []
    errors: list[Exception] = []
    lock = threading.Lock()

    def claim():
        try:
            barrier.wait(timeout=10)
            with database.get_session() as session:
                won = rsvp_module.claim_popularity(session, event.id)
            with lock:
                results.append(won)
        except Exception as exc:  # pragma: no cover - surfaced via assertion
            errors.append(exc)
        finally:
            database.SessionLocal.remove()

    threads = [threading.Thread(target=claim) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(results) == [False] * (workers - 1) + [True]
    with database.get_session() as session:
        assert session.get(Event, event.id).popularity_notified_at is not None


def test_fan_out_failure_does_not_fail_the_rsvp(make_services, make_user, make_event, monkeypatch):
    svc = make_services(popularity_threshold=1)
    host = make_user("host")
    event = make_event(host)
    make_user("neighbour", near=3)
    guest = make_user("guest")

    def explode(*_args, **_kwargs):
        raise RuntimeError("push provider down")

    monkeypatch.setattr(svc.dispatcher, "notify_many", explode)

    outcome = svc.ledger.set_rsvp(event.id, guest.id, "going")

    assert outcome.claimed is True
    assert svc.runner.stats["failed"] == 1
    assert _rsvp_rows(event.id) == 1


def test_rsvp_changes_broadcast_counts(services, make_user, make_event, broadcasts):
    host = make_user("host")
    guest = make_user("guest")
    event = make_event(host)

    services.ledger.set_rsvp(event.id, guest.id, "maybe")
    services.ledger.set_rsvp(event.id, guest.id, "maybe")
    services.ledger.cancel_rsvp(event.id, guest.id)

    names = [(name, payload["counts"]) for _, name, payload in broadcasts]
    assert names == [
        ("rsvp_count", {"going": 0, "maybe": 1, "not_going": 0}),
        ("rsvp_count", {"going": 0, "maybe": 0, "not_going": 0}),
    ]


def test_cancel_rsvp_without_row_returns_false(services, make_user, make_event):
    host = make_user("host")
    event = make_event(host)

    assert services.ledger.cancel_rsvp(event.id, host.id) is False


def test_confirm_attendance_rules(services, make_user, make_event):
    host = make_user("host")
    guest = make_user("guest")
    undecided = make_user("undecided")
    upcoming = make_event(host)
    services.ledger.set_rsvp(upcoming.id, guest.id, "going")

    with pytest.raises(StateConflictError) as not_ended:
        services.ledger.confirm_attendance(upcoming.id, guest.id)
    assert not_ended.value.code == "EVENT_NOT_ENDED"

    past = make_event(host, days_from_now=-3)
    with database.get_session() as session:
        session.add(RSVP(event_id=past.id, user_id=guest.id, status="going"))
        session.add(RSVP(event_id=past.id, user_id=undecided.id, status="maybe"))

    confirmed = services.ledger.confirm_attendance(past.id, guest.id)
    assert confirmed.confirmed_at is not None
    again = services.ledger.confirm_attendance(past.id, guest.id)
    assert again.confirmed_at == confirmed.confirmed_at

    with pytest.raises(StateConflictError) as not_attending:
        services.ledger.confirm_attendance(past.id, undecided.id)
    assert not_attending.value.code == "NOT_ATTENDING"

    with pytest.raises(NotFoundError):
        services.ledger.confirm_attendance(past.id, host.id)
