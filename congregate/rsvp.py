"""RSVP ledger and the popularity threshold monitor.

The ledger keeps one row per ``(event, user)`` and only ever upserts it. The
monitor compares the count of ``going`` RSVPs before and after each write and
claims the event's ``popularity_notified_at`` marker with a conditional
update, so the nearby fan-out runs at most once per event no matter how many
writers cross the threshold together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import audience
from .database import get_session
from .errors import NotFoundError, StateConflictError, ValidationError
from .events import require_active_event, require_event, require_user
from .models import RSVP, RSVP_STATUSES, Event
from .notifications import FanOutResult, NotificationDispatcher, NotificationMessage
from .realtime import BROADCAST, Broadcaster
from .tasks import TaskRunner
from .utils import truncate_text, utcnow

logger = logging.getLogger(__name__)

# Older clients still send these.
STATUS_ALIASES = {
    "going": "going",
    "attending": "going",
    "yes": "going",
    "maybe": "maybe",
    "interested": "maybe",
    "not_going": "not_going",
    "not-going": "not_going",
    "no": "not_going",
    "declined": "not_going",
}


def normalize_status(raw) -> str:
    if not isinstance(raw, str):
        raise ValidationError("INVALID_STATUS", "RSVP status must be a string")
    status = STATUS_ALIASES.get(raw.strip().lower())
    if status is None:
        raise ValidationError(
            "INVALID_STATUS",
            f"RSVP status must be one of {', '.join(RSVP_STATUSES)}",
        )
    return status


@dataclass(frozen=True)
class RsvpWrite:
    rsvp: RSVP
    previous_status: str | None
    changed: bool


@dataclass(frozen=True)
class RsvpOutcome:
    event_id: str
    user_id: str
    status: str
    previous_status: str | None
    changed: bool
    attending_before: int
    attending_after: int
    counts: dict[str, int] = field(default_factory=dict)
    crossed: bool = False
    claimed: bool = False
    event_has_coordinates: bool = False


def attending_count(session: Session, event_id: str) -> int:
    """Number of ``going`` RSVPs; this is the count the threshold watches."""
    return session.scalar(
        select(func.count(RSVP.id)).where(RSVP.event_id == event_id, RSVP.status == "going")
    ) or 0


def rsvp_counts(session: Session, event_id: str) -> dict[str, int]:
    counts = {status: 0 for status in RSVP_STATUSES}
    rows = session.execute(
        select(RSVP.status, func.count(RSVP.id))
        .where(RSVP.event_id == event_id)
        .group_by(RSVP.status)
    )
    for status, total in rows:
        counts[status] = total
    return counts


def _dialect_insert(session: Session):
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    return None


def _fetch_rsvp(session: Session, event_id: str, user_id: str, *, lock: bool = False) -> RSVP | None:
    stmt = select(RSVP).where(RSVP.event_id == event_id, RSVP.user_id == user_id)
    if lock:
        stmt = stmt.with_for_update()
    return session.scalars(stmt.execution_options(populate_existing=True)).first()


def upsert_rsvp(session: Session, event_id: str, user_id: str, status: str) -> RsvpWrite:
    """Insert or update the single RSVP row for ``(event_id, user_id)``.

    Writing the status already on file is a no-op reported as unchanged.
    """
    existing = _fetch_rsvp(session, event_id, user_id, lock=True)
    previous = existing.status if existing is not None else None
    if previous == status:
        return RsvpWrite(existing, previous, False)

    now = utcnow()
    insert = _dialect_insert(session)
    if insert is not None:
        stmt = insert(RSVP).values(
            event_id=event_id,
            user_id=user_id,
            status=status,
            created_at=now,
            last_modified=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["event_id", "user_id"],
            set_={"status": status, "last_modified": now},
        )
        session.execute(stmt)
    elif existing is None:
        try:
            with session.begin_nested():
                session.add(RSVP(event_id=event_id, user_id=user_id, status=status))
        except IntegrityError:
            session.execute(
                update(RSVP)
                .where(RSVP.event_id == event_id, RSVP.user_id == user_id)
                .values(status=status, last_modified=now)
            )
    else:
        existing.status = status
        session.add(existing)
        session.flush()

    rsvp = _fetch_rsvp(session, event_id, user_id)
    if rsvp.status != "going" and rsvp.confirmed_at is not None:
        rsvp.confirmed_at = None
        session.add(rsvp)
        session.flush()
    return RsvpWrite(rsvp, previous, True)


def claim_popularity(session: Session, event_id: str) -> bool:
    """Set the popularity marker if unset; ``True`` only for the winner."""
    result = session.execute(
        update(Event)
        .where(Event.id == event_id, Event.popularity_notified_at.is_(None))
        .values(popularity_notified_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


class ThresholdMonitor:
    """Watch RSVP writes for the moment an event becomes popular."""

    def __init__(
        self,
        *,
        dispatcher: NotificationDispatcher,
        runner: TaskRunner,
        broadcaster: Broadcaster,
        threshold: int = 20,
        radius_miles: float = 30.0,
    ) -> None:
        self.dispatcher = dispatcher
        self.runner = runner
        self.broadcaster = broadcaster
        self.threshold = threshold
        self.radius_miles = radius_miles

    def record(self, session: Session, event: Event, user_id: str, status: str) -> RsvpOutcome:
        """Write the RSVP and detect a threshold crossing in the same transaction."""
        before = attending_count(session, event.id)
        write = upsert_rsvp(session, event.id, user_id, status)
        after = attending_count(session, event.id) if write.changed else before
        crossed = write.changed and before < self.threshold <= after
        claimed = False
        if crossed:
            claimed = claim_popularity(session, event.id)
            if not claimed:
                logger.info("Event %s crossed %d again; already notified", event.id, self.threshold)
        return RsvpOutcome(
            event_id=event.id,
            user_id=user_id,
            status=write.rsvp.status,
            previous_status=write.previous_status,
            changed=write.changed,
            attending_before=before,
            attending_after=after,
            counts=rsvp_counts(session, event.id),
            crossed=crossed,
            claimed=claimed,
            event_has_coordinates=event.has_coordinates,
        )

    def publish(self, outcome: RsvpOutcome) -> None:
        """Run post-commit side effects for a recorded RSVP."""
        if outcome.changed:
            self.broadcaster.emit(
                BROADCAST,
                "rsvp_count",
                {"eventId": outcome.event_id, "counts": dict(outcome.counts)},
            )
        if not outcome.claimed:
            return
        if not outcome.event_has_coordinates:
            logger.info(
                "Event %s reached %d attendees but has no coordinates; skipping nearby fan-out",
                outcome.event_id,
                outcome.attending_after,
            )
            return
        logger.info(
            "Event %s reached %d attendees; scheduling nearby fan-out",
            outcome.event_id,
            outcome.attending_after,
        )
        self.runner.submit(
            f"popularity-fanout:{outcome.event_id}", self.fan_out_popular_event, outcome.event_id
        )

    def fan_out_popular_event(self, event_id: str) -> FanOutResult | None:
        with get_session() as session:
            event = session.get(Event, event_id)
            if event is None or not event.has_coordinates:
                return None
            attendees = audience.event_attendees(session, event_id)
            matches = audience.users_within_radius(
                session,
                latitude=event.latitude,
                longitude=event.longitude,
                radius=self.radius_miles,
                exclude=set(attendees) | {event.host_id},
            )
            going = attending_count(session, event_id)
            title = event.title

        if not matches:
            logger.info("No nearby users to notify for event %s", event_id)
            return FanOutResult()
        message = NotificationMessage(
            title=f"Popular near you: {truncate_text(title, 40)}",
            body=f"{going} people are going to this event",
            category="event",
            payload={"type": "event_popular", "eventId": event_id},
        )
        result = self.dispatcher.notify_many([match.user_id for match in matches], message)
        logger.info(
            "Popular event %s fan-out: %d of %d nearby users notified",
            event_id,
            len(result.delivered),
            len(matches),
        )
        return result


class RsvpLedger:
    def __init__(self, monitor: ThresholdMonitor) -> None:
        self.monitor = monitor

    def set_rsvp(self, event_id: str, user_id: str, status) -> RsvpOutcome:
        status = normalize_status(status)
        with get_session() as session:
            event = require_active_event(session, event_id)
            require_user(session, user_id)
            outcome = self.monitor.record(session, event, user_id, status)
        if outcome.changed:
            logger.info(
                "RSVP %s -> %s for event %s by %s",
                outcome.previous_status,
                outcome.status,
                event_id,
                user_id,
            )
        self.monitor.publish(outcome)
        return outcome

    def cancel_rsvp(self, event_id: str, user_id: str) -> bool:
        """Withdraw an RSVP entirely; ``False`` when there was none."""
        with get_session() as session:
            require_event(session, event_id)
            rsvp = _fetch_rsvp(session, event_id, user_id, lock=True)
            if rsvp is None:
                return False
            session.delete(rsvp)
            session.flush()
            counts = rsvp_counts(session, event_id)
        self.monitor.broadcaster.emit(
            BROADCAST, "rsvp_count", {"eventId": event_id, "counts": counts}
        )
        return True

    def confirm_attendance(self, event_id: str, user_id: str) -> RSVP:
        """Mark a ``going`` RSVP as attended once the event is over."""
        with get_session() as session:
            event = require_event(session, event_id)
            if not event.has_ended():
                raise StateConflictError("EVENT_NOT_ENDED", "Attendance can be confirmed after the event")
            rsvp = _fetch_rsvp(session, event_id, user_id, lock=True)
            if rsvp is None:
                raise NotFoundError("RSVP_NOT_FOUND", "No RSVP for this event")
            if rsvp.status != "going":
                raise StateConflictError("NOT_ATTENDING", "Only attendees can confirm attendance")
            if rsvp.confirmed_at is None:
                rsvp.confirmed_at = utcnow()
                session.add(rsvp)
            return rsvp
