"""Attendee reminders ahead of an event's start."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import audience
from .database import get_session
from .models import Event
from .notifications import NotificationDispatcher, NotificationMessage
from .utils import truncate_text, utcnow

logger = logging.getLogger(__name__)

# Start times in (now + lower, now + upper] are due for the window.
REMINDER_WINDOWS: dict[str, tuple[timedelta, timedelta]] = {
    "24h": (timedelta(hours=24), timedelta(hours=25)),
    "1h": (timedelta(hours=1), timedelta(hours=2)),
}
REMINDER_MARKERS = {
    "24h": Event.reminder_24h_sent_at,
    "1h": Event.reminder_1h_sent_at,
}


def events_due_for_reminder(session: Session, window: str, now: datetime) -> list[str]:
    lower, upper = REMINDER_WINDOWS[window]
    start_after, start_by = now + lower, now + upper
    marker = REMINDER_MARKERS[window]
    candidates = session.scalars(
        select(Event).where(
            Event.status == "active",
            marker.is_(None),
            Event.event_date >= start_after.date(),
            Event.event_date <= start_by.date(),
        )
    )
    return [event.id for event in candidates if start_after < event.starts_at <= start_by]


def claim_reminder(session: Session, event_id: str, window: str) -> bool:
    """Stamp the window's marker if unset; ``True`` only for the caller that set it."""
    marker = REMINDER_MARKERS[window]
    result = session.execute(
        update(Event)
        .where(Event.id == event_id, marker.is_(None), Event.status == "active")
        .values({marker.key: utcnow()})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def reminder_message(event: Event, window: str) -> NotificationMessage:
    label = "Tomorrow" if window == "24h" else "Starting soon"
    when = f"{event.event_date.isoformat()} at {event.start_time.strftime('%H:%M')}"
    return NotificationMessage(
        title=f"Reminder: {truncate_text(event.title, 40)}",
        body=f"{label}: {when} at {event.location or 'TBD'}",
        category="event",
        payload={
            "type": "event_reminder",
            "eventId": event.id,
            "communityId": event.community_id,
            "window": window,
        },
    )


class EventReminders:
    """Send each attendee one reminder per window, even across restarts."""

    def __init__(self, *, dispatcher: NotificationDispatcher) -> None:
        self.dispatcher = dispatcher

    def send_due_reminders(self, now: datetime | None = None) -> dict[str, int]:
        """Remind attendees of events entering a window; returns events reminded per window."""
        now = now or utcnow()
        sent: dict[str, int] = {}
        for window in REMINDER_WINDOWS:
            with get_session() as session:
                due = events_due_for_reminder(session, window, now)
            sent[window] = sum(1 for event_id in due if self.remind(event_id, window))
        return sent

    def remind(self, event_id: str, window: str) -> bool:
        with get_session() as session:
            if not claim_reminder(session, event_id, window):
                return False
            event = session.get(Event, event_id)
            recipients = audience.event_attendees(session, event_id)
            message = reminder_message(event, window)

        logger.info(
            "Sending %s reminder for event %s to %d attendee(s)", window, event_id, len(recipients)
        )
        if recipients:
            self.dispatcher.notify_many(recipients, message)
        return True
