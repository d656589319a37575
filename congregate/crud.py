"""CRUD helpers for users, communities and events."""

from __future__ import annotations

from datetime import date, time

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import EVENT_VISIBILITIES, Community, CommunityMember, Event, User
from .utils import parse_coordinate

PROFILE_VISIBILITIES = {"public", "friends", "private"}
MEMBER_ROLES = {"member", "moderator", "owner"}


def get_user_by_username(session: Session, username: str) -> User | None:
    normalized = (username or "").strip().lower()
    if not normalized:
        return None
    return session.scalars(select(User).where(User.username == normalized)).first()


def create_user(
    session: Session,
    *,
    username: str,
    display_name: str | None = None,
    profile_visibility: str = "public",
    latitude: float | None = None,
    longitude: float | None = None,
) -> User:
    normalized = (username or "").strip().lower()
    if not normalized:
        raise ValueError("Username is required")
    if profile_visibility not in PROFILE_VISIBILITIES:
        raise ValueError("Invalid profile visibility")
    user = User(
        username=normalized,
        display_name=display_name,
        profile_visibility=profile_visibility,
        latitude=parse_coordinate(latitude),
        longitude=parse_coordinate(longitude),
    )
    session.add(user)
    session.flush()
    return user


def create_community(session: Session, *, name: str, owner: User | None = None) -> Community:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("Community name is required")
    community = Community(name=cleaned)
    session.add(community)
    session.flush()
    if owner is not None:
        add_member(session, community=community, user=owner, role="owner")
    return community


def add_member(
    session: Session, *, community: Community, user: User, role: str = "member"
) -> CommunityMember:
    """Add ``user`` to ``community``; an existing membership only changes role."""
    if role not in MEMBER_ROLES:
        raise ValueError("Invalid member role")
    member = session.scalars(
        select(CommunityMember).where(
            CommunityMember.community_id == community.id,
            CommunityMember.user_id == user.id,
        )
    ).first()
    if member is None:
        member = CommunityMember(community_id=community.id, user_id=user.id, role=role)
    else:
        member.role = role
    session.add(member)
    session.flush()
    return member


def create_event(
    session: Session,
    *,
    host: User,
    title: str,
    event_date: date,
    start_time: time,
    end_date: date | None = None,
    end_time: time | None = None,
    description: str | None = None,
    location: str | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    community: Community | None = None,
    visibility: str = "public",
) -> Event:
    if visibility not in EVENT_VISIBILITIES:
        raise ValueError("Invalid event visibility")
    if visibility == "community" and community is None:
        raise ValueError("Community events need a community")
    if end_date is not None and end_date < event_date:
        raise ValueError("End date must not be before the start date")
    event = Event(
        host_id=host.id,
        community_id=community.id if community else None,
        title=title,
        description=description,
        event_date=event_date,
        end_date=end_date,
        start_time=start_time,
        end_time=end_time,
        location=location,
        latitude=parse_coordinate(latitude),
        longitude=parse_coordinate(longitude),
        visibility=visibility,
        status="active",
    )
    session.add(event)
    session.flush()
    return event
