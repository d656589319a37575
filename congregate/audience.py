"""Recipient resolution for notification fan-out."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from .geo import GeoMatch, rank_within_radius
from .models import RSVP, Block, CommunityMember, FollowEdge, Invitation, User

ATTENDEE_STATUSES = ("going", "maybe")


def _ordered_unique(ids: Iterable[str], exclude: Iterable[str] | None) -> list[str]:
    excluded = set(exclude or ())
    result: list[str] = []
    seen: set[str] = set()
    for user_id in ids:
        if user_id in excluded or user_id in seen:
            continue
        seen.add(user_id)
        result.append(user_id)
    return result


def community_members(
    session: Session, community_id: str, *, exclude: Iterable[str] | None = None
) -> list[str]:
    stmt = (
        select(CommunityMember.user_id)
        .where(CommunityMember.community_id == community_id)
        .order_by(CommunityMember.joined_at, CommunityMember.user_id)
    )
    return _ordered_unique(session.scalars(stmt), exclude)


def event_attendees(
    session: Session,
    event_id: str,
    *,
    exclude: Iterable[str] | None = None,
    statuses: Iterable[str] = ATTENDEE_STATUSES,
) -> list[str]:
    stmt = (
        select(RSVP.user_id)
        .where(RSVP.event_id == event_id, RSVP.status.in_(tuple(statuses)))
        .order_by(RSVP.created_at, RSVP.user_id)
    )
    return _ordered_unique(session.scalars(stmt), exclude)


def invited_users(session: Session, event_id: str) -> list[str]:
    stmt = select(Invitation.invitee_id).where(Invitation.event_id == event_id)
    return list(session.scalars(stmt))


def users_within_radius(
    session: Session,
    *,
    latitude: float,
    longitude: float,
    radius: float,
    exclude: Iterable[str] | None = None,
) -> list[GeoMatch]:
    """Return users with stored coordinates within ``radius`` miles.

    ``radius`` is expected to be clamped by the caller. Results are sorted by
    distance ascending.
    """
    excluded = set(exclude or ())
    stmt = select(User.id, User.latitude, User.longitude).where(
        User.latitude.is_not(None),
        User.longitude.is_not(None),
        User.deactivated_at.is_(None),
    )
    candidates = [
        (user_id, lat, lon)
        for user_id, lat, lon in session.execute(stmt)
        if user_id not in excluded
    ]
    return rank_within_radius((latitude, longitude), candidates, radius)


def blocked_user_ids(session: Session, user_id: str) -> set[str]:
    """Users with a block relationship to ``user_id`` in either direction."""
    stmt = select(Block.blocker_id, Block.blocked_id).where(
        or_(Block.blocker_id == user_id, Block.blocked_id == user_id)
    )
    related: set[str] = set()
    for blocker_id, blocked_id in session.execute(stmt):
        related.add(blocked_id if blocker_id == user_id else blocker_id)
    return related


def connections_attending(session: Session, event_id: str, viewer_id: str) -> list[str]:
    """Users the viewer follows (accepted edges only) who are attending."""
    stmt = (
        select(RSVP.user_id)
        .join(
            FollowEdge,
            and_(
                FollowEdge.followee_id == RSVP.user_id,
                FollowEdge.follower_id == viewer_id,
                FollowEdge.status == "accepted",
            ),
        )
        .where(RSVP.event_id == event_id, RSVP.status.in_(ATTENDEE_STATUSES))
        .order_by(RSVP.created_at, RSVP.user_id)
    )
    return _ordered_unique(
        session.scalars(stmt), blocked_user_ids(session, viewer_id) | {viewer_id}
    )
