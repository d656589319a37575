"""SQLAlchemy models for congregate."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import combine, utcnow

Base = declarative_base()

RSVP_STATUSES = ("going", "maybe", "not_going")
INVITATION_STATUSES = ("pending", "accepted", "declined", "expired")
FOLLOW_STATUSES = ("pending", "accepted")
EVENT_STATUSES = ("active", "canceled")
EVENT_VISIBILITIES = ("public", "community", "host_channel")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    username = Column(String(64), nullable=False, unique=True)
    display_name = Column(String(120), nullable=True)
    profile_visibility = Column(String(16), nullable=False, default="public")
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    # Unset preference columns mean "enabled".
    notify_dms = Column(Boolean, nullable=True)
    notify_communities = Column(Boolean, nullable=True)
    notify_forums = Column(Boolean, nullable=True)
    notify_feed = Column(Boolean, nullable=True)
    deactivated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    devices = relationship(
        "DeviceToken", back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def name(self) -> str:
        return self.display_name or self.username or "Someone"

    @property
    def is_private(self) -> bool:
        return self.profile_visibility in {"private", "friends"}

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class Community(Base):
    __tablename__ = "communities"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    members = relationship(
        "CommunityMember", back_populates="community", cascade="all, delete-orphan"
    )


class CommunityMember(Base):
    __tablename__ = "community_members"
    __table_args__ = (
        UniqueConstraint("community_id", "user_id", name="uq_community_members"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    community_id = Column(String(36), ForeignKey("communities.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    role = Column(String(16), nullable=False, default="member")
    joined_at = Column(DateTime, default=_now, nullable=False)

    community = relationship("Community", back_populates="members")


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    host_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    community_id = Column(String(36), ForeignKey("communities.id"), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    event_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=True)
    location = Column(String(255), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    visibility = Column(String(16), nullable=False, default="public")
    status = Column(String(16), nullable=False, default="active")
    canceled_at = Column(DateTime, nullable=True)
    popularity_notified_at = Column(DateTime, nullable=True)
    reminder_24h_sent_at = Column(DateTime, nullable=True)
    reminder_1h_sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    rsvps = relationship("RSVP", back_populates="event", cascade="all, delete-orphan")
    invitations = relationship(
        "Invitation", back_populates="event", cascade="all, delete-orphan"
    )

    @property
    def starts_at(self) -> datetime:
        return combine(self.event_date, self.start_time)

    @property
    def ends_at(self) -> datetime:
        """Return the end of the event, falling back to its start.

        Events without any time run until midnight after their last day.
        """
        last_day = self.end_date or self.event_date
        at = self.end_time or self.start_time
        if at is None:
            return combine(last_day + timedelta(days=1), None)
        return combine(last_day, at)

    @property
    def is_canceled(self) -> bool:
        return self.status == "canceled"

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def has_ended(self, now: datetime | None = None) -> bool:
        return self.ends_at <= (now or utcnow())


class RSVP(Base):
    __tablename__ = "rsvps"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_rsvps_event_user"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    status = Column(String(16), nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="rsvps")


class Bookmark(Base):
    __tablename__ = "event_bookmarks"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_event_bookmarks"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_at = Column(DateTime, default=_now, nullable=False)


class Invitation(Base):
    __tablename__ = "event_invitations"
    __table_args__ = (
        UniqueConstraint("event_id", "invitee_id", name="uq_event_invitations"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    inviter_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    invitee_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    created_at = Column(DateTime, default=_now, nullable=False)
    responded_at = Column(DateTime, nullable=True)

    event = relationship("Event", back_populates="invitations")


class FollowEdge(Base):
    __tablename__ = "user_follows"
    __table_args__ = (
        UniqueConstraint("follower_id", "followee_id", name="uq_user_follows"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    follower_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    followee_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    status = Column(String(16), nullable=False, default="accepted")
    created_at = Column(DateTime, default=_now, nullable=False)


class Block(Base):
    __tablename__ = "user_blocks"
    __table_args__ = (
        UniqueConstraint("blocker_id", "blocked_id", name="uq_user_blocks"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    blocker_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    blocked_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    category = Column(String(16), nullable=False)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False, default="")
    payload = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)


class DeviceToken(Base):
    __tablename__ = "device_tokens"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    token = Column(String(255), nullable=False, unique=True)
    platform = Column(String(16), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_used_at = Column(DateTime, default=_now, nullable=False)

    user = relationship("User", back_populates="devices")
