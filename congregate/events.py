"""Event lookups, bookmarks and cancellation."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import audience, crud
from .database import get_session
from .errors import NotAuthorizedError, NotFoundError, StateConflictError, ValidationError
from .models import Bookmark, Community, CommunityMember, Event, User
from .notifications import NotificationDispatcher, NotificationMessage
from .tasks import TaskRunner
from .utils import truncate_text, utcnow

logger = logging.getLogger(__name__)

MODERATOR_ROLES = {"moderator", "owner"}


def require_event(session: Session, event_id: str) -> Event:
    event = session.get(Event, event_id)
    if event is None:
        raise NotFoundError("EVENT_NOT_FOUND", "Event not found")
    return event


def require_active_event(session: Session, event_id: str) -> Event:
    event = require_event(session, event_id)
    if event.is_canceled:
        raise StateConflictError("EVENT_CANCELED", "This event has been canceled")
    return event


def require_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None or user.deactivated_at is not None:
        raise NotFoundError("USER_NOT_FOUND", "User not found")
    return user


def can_manage_event(session: Session, event: Event, actor_id: str) -> bool:
    """Hosts manage their events; community moderators manage community events."""
    if event.host_id == actor_id:
        return True
    if not event.community_id:
        return False
    role = session.scalars(
        select(CommunityMember.role).where(
            CommunityMember.community_id == event.community_id,
            CommunityMember.user_id == actor_id,
        )
    ).first()
    return role in MODERATOR_ROLES


def bookmark_event(event_id: str, user_id: str) -> bool:
    """Add the event to the user's bookmarks; ``False`` if already there."""
    with get_session() as session:
        require_active_event(session, event_id)
        require_user(session, user_id)
        existing = session.scalars(
            select(Bookmark).where(Bookmark.event_id == event_id, Bookmark.user_id == user_id)
        ).first()
        if existing is not None:
            return False
        try:
            with session.begin_nested():
                session.add(Bookmark(event_id=event_id, user_id=user_id))
        except IntegrityError:
            return False
        return True


def unbookmark_event(event_id: str, user_id: str) -> bool:
    with get_session() as session:
        existing = session.scalars(
            select(Bookmark).where(Bookmark.event_id == event_id, Bookmark.user_id == user_id)
        ).first()
        if existing is None:
            return False
        session.delete(existing)
        return True


def cancel_event(
    event_id: str,
    actor_id: str,
    *,
    dispatcher: NotificationDispatcher,
    runner: TaskRunner,
) -> Event:
    """Soft-cancel an event and tell its attendees. Canceling is terminal."""
    with get_session() as session:
        event = require_event(session, event_id)
        if not can_manage_event(session, event, actor_id):
            raise NotAuthorizedError("NOT_AUTHORIZED", "Only the host or a moderator may cancel")
        if event.is_canceled:
            raise StateConflictError("EVENT_CANCELED", "Event is already canceled")
        event.status = "canceled"
        event.canceled_at = utcnow()
        session.add(event)
        recipients = audience.event_attendees(session, event_id, exclude=[actor_id])
        title = event.title

    logger.info("Canceled event %s by %s; notifying %d attendees", event_id, actor_id, len(recipients))
    if recipients:
        message = NotificationMessage(
            title=f"Event canceled: {truncate_text(title, 40)}",
            body="This event has been canceled by the organizer.",
            category="event",
            payload={"type": "event_canceled", "eventId": event_id},
        )
        runner.submit(f"cancel-fanout:{event_id}", dispatcher.notify_many, recipients, message)
    return event


def create_event(
    host_id: str,
    *,
    dispatcher: NotificationDispatcher,
    runner: TaskRunner,
    community_id: str | None = None,
    **fields,
) -> Event:
    """Create an event for ``host_id`` and announce it to its community."""
    with get_session() as session:
        host = require_user(session, host_id)
        community = None
        if community_id:
            community = session.get(Community, community_id)
            if community is None:
                raise NotFoundError("COMMUNITY_NOT_FOUND", "Community not found")
        try:
            event = crud.create_event(session, host=host, community=community, **fields)
        except ValueError as exc:
            raise ValidationError("INVALID_EVENT", str(exc)) from exc

    logger.info("Created event %s hosted by %s", event.id, host_id)
    if community_id:
        announce_event(event.id, host_id, dispatcher=dispatcher, runner=runner)
    return event


def announce_event(
    event_id: str,
    actor_id: str,
    *,
    dispatcher: NotificationDispatcher,
    runner: TaskRunner,
) -> int:
    """Tell community members about a new community event; returns the audience size."""
    with get_session() as session:
        event = require_event(session, event_id)
        if not event.community_id or event.is_canceled:
            return 0
        recipients = audience.community_members(session, event.community_id, exclude=[actor_id])
        when = f"{event.event_date.isoformat()} at {event.start_time.strftime('%H:%M')}"
        message = NotificationMessage(
            title=f"New event: {truncate_text(event.title, 40)}",
            body=f"{when} - {event.location or 'TBD'}",
            category="event",
            payload={
                "type": "event_created",
                "eventId": event.id,
                "communityId": event.community_id,
            },
        )

    logger.info("Announcing event %s to %d community member(s)", event_id, len(recipients))
    if recipients:
        runner.submit(f"announce:{event_id}", dispatcher.notify_many, recipients, message)
    return len(recipients)
