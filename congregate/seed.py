"""Development helpers for populating fake users, communities and events."""

from __future__ import annotations

import random
from datetime import timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .crud import add_member, create_community, create_event, create_user, get_user_by_username
from .database import get_session
from .models import RSVP, Community, FollowEdge, User
from .storage import init_db
from .utils import utcnow

# Users are scattered around this point so radius queries find neighbours.
_CENTER = (32.7767, -96.7970)
_SPREAD_DEGREES = 0.6

_community_suffixes = [
    "Fellowship",
    "Bible Study",
    "Young Adults",
    "Worship Team",
    "Prayer Circle",
    "Men's Group",
    "Women's Ministry",
]
_event_types = [
    "Potluck",
    "Prayer Night",
    "Service Day",
    "Worship Night",
    "Picnic",
    "Study Session",
    "Retreat",
]
_rsvp_statuses = ["going", "going", "going", "maybe", "maybe", "not_going"]
_visibilities = ["public", "public", "public", "friends", "private"]


def seed_fake_data(
    *,
    user_count: int = 40,
    community_count: int = 3,
    event_count: int = 10,
) -> dict[str, int]:
    """Populate the database with synthetic users, communities and events."""
    if user_count < 1:
        raise ValueError("user_count must be >= 1")
    if community_count < 0:
        raise ValueError("community_count must be >= 0")
    if event_count < 0:
        raise ValueError("event_count must be >= 0")

    init_db()
    fake = Faker()
    stats = {"users": 0, "communities": 0, "events": 0, "rsvps": 0, "follows": 0}

    with get_session() as session:
        users = [_create_user(session, fake) for _ in range(user_count)]
        stats["users"] = len(users)

        communities = []
        for _ in range(community_count):
            communities.append(_create_community(session, fake, users))
        stats["communities"] = len(communities)

        for _ in range(event_count):
            community = random.choice(communities) if communities and random.random() < 0.5 else None
            stats["rsvps"] += _create_event(session, fake, users, community)
            stats["events"] += 1

        stats["follows"] = _create_follows(session, users)

    return stats


def _create_user(session: Session, fake: Faker) -> User:
    for _ in range(20):
        username = fake.user_name()
        if get_user_by_username(session, username):
            continue
        has_location = random.random() < 0.85
        return create_user(
            session,
            username=username,
            display_name=fake.name(),
            profile_visibility=random.choice(_visibilities),
            latitude=_CENTER[0] + random.uniform(-_SPREAD_DEGREES, _SPREAD_DEGREES) if has_location else None,
            longitude=_CENTER[1] + random.uniform(-_SPREAD_DEGREES, _SPREAD_DEGREES) if has_location else None,
        )
    raise RuntimeError("Failed to create a unique username")


def _create_community(session: Session, fake: Faker, users: list[User]) -> Community:
    owner = random.choice(users)
    community = create_community(
        session, name=f"{fake.city()} {random.choice(_community_suffixes)}", owner=owner
    )
    members = random.sample(users, k=min(len(users), random.randint(3, 15)))
    for user in members:
        if user.id == owner.id:
            continue
        role = "moderator" if random.random() < 0.1 else "member"
        add_member(session, community=community, user=user, role=role)
    return community


def _create_event(
    session: Session, fake: Faker, users: list[User], community: Community | None
) -> int:
    host = random.choice(users)
    starts = utcnow() + timedelta(days=random.randint(-7, 30), minutes=random.randint(0, 23 * 60))
    ends = starts + timedelta(hours=random.randint(1, 6))
    has_location = random.random() < 0.8
    event = create_event(
        session,
        host=host,
        title=f"{fake.city()} {random.choice(_event_types)}",
        description="\n\n".join(fake.paragraphs(nb=2)),
        event_date=starts.date(),
        start_time=starts.time().replace(microsecond=0),
        end_date=ends.date() if ends.date() != starts.date() else None,
        end_time=ends.time().replace(microsecond=0),
        location=fake.address().replace("\n", ", "),
        latitude=_CENTER[0] + random.uniform(-0.3, 0.3) if has_location else None,
        longitude=_CENTER[1] + random.uniform(-0.3, 0.3) if has_location else None,
        community=community,
        visibility="community" if community else "public",
    )
    guests = random.sample(users, k=random.randint(0, min(len(users), 25)))
    total = 0
    for user in guests:
        session.add(RSVP(event_id=event.id, user_id=user.id, status=random.choice(_rsvp_statuses)))
        total += 1
    session.flush()
    return total


def _create_follows(session: Session, users: list[User]) -> int:
    total = 0
    seen: set[tuple[str, str]] = set()
    for follower in users:
        for followee in random.sample(users, k=min(len(users), random.randint(0, 5))):
            pair = (follower.id, followee.id)
            if follower.id == followee.id or pair in seen:
                continue
            seen.add(pair)
            status = "pending" if followee.is_private and random.random() < 0.5 else "accepted"
            session.add(FollowEdge(follower_id=follower.id, followee_id=followee.id, status=status))
            total += 1
    session.flush()
    return total
