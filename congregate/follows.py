"""Follow requests, acceptance and blocking."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import get_session
from .errors import NotAuthorizedError, NotFoundError, ValidationError
from .events import require_user
from .models import Block, FollowEdge
from .notifications import NotificationDispatcher, NotificationMessage
from .realtime import BROADCAST, Broadcaster
from .tasks import TaskRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FollowState:
    is_following: bool
    is_pending: bool
    already_exists: bool = False

    @classmethod
    def from_edge(cls, edge: FollowEdge, *, already_exists: bool) -> "FollowState":
        return cls(
            is_following=edge.status == "accepted",
            is_pending=edge.status == "pending",
            already_exists=already_exists,
        )

    def as_dict(self) -> dict[str, bool]:
        return {
            "isFollowing": self.is_following,
            "isPending": self.is_pending,
            "alreadyExists": self.already_exists,
        }


def is_blocked(session: Session, first_id: str, second_id: str) -> bool:
    """True when either user has blocked the other."""
    stmt = select(Block.id).where(
        or_(
            and_(Block.blocker_id == first_id, Block.blocked_id == second_id),
            and_(Block.blocker_id == second_id, Block.blocked_id == first_id),
        )
    )
    return session.scalars(stmt).first() is not None


def _edge(session: Session, follower_id: str, followee_id: str) -> FollowEdge | None:
    return session.scalars(
        select(FollowEdge).where(
            FollowEdge.follower_id == follower_id, FollowEdge.followee_id == followee_id
        )
    ).first()


class FollowGate:
    def __init__(
        self,
        *,
        dispatcher: NotificationDispatcher,
        runner: TaskRunner,
        broadcaster: Broadcaster,
    ) -> None:
        self.dispatcher = dispatcher
        self.runner = runner
        self.broadcaster = broadcaster

    def _notify(self, user_id: str, message: NotificationMessage) -> None:
        self.runner.submit(f"follow-notify:{user_id}", self.dispatcher.notify, user_id, message)

    def _emit_count(self, follower_id: str, followee_id: str, action: str) -> None:
        self.broadcaster.emit(
            BROADCAST,
            "follow_count",
            {"followerId": follower_id, "followedId": followee_id, "action": action},
        )

    def follow(self, follower_id: str, followee_id: str) -> FollowState:
        """Follow a user; private accounts get a pending request instead.

        Repeating the call returns the existing edge's state unchanged.
        """
        if follower_id == followee_id:
            raise ValidationError("SELF_FOLLOW", "You cannot follow yourself")
        with get_session() as session:
            follower = require_user(session, follower_id)
            target = require_user(session, followee_id)
            if is_blocked(session, follower_id, followee_id):
                raise NotAuthorizedError("BLOCKED", "You cannot follow this user")
            existing = _edge(session, follower_id, followee_id)
            if existing is not None:
                return FollowState.from_edge(existing, already_exists=True)

            edge = FollowEdge(
                follower_id=follower_id,
                followee_id=followee_id,
                status="pending" if target.is_private else "accepted",
            )
            try:
                with session.begin_nested():
                    session.add(edge)
            except IntegrityError:
                # Lost a race with an identical request.
                existing = _edge(session, follower_id, followee_id)
                return FollowState.from_edge(existing, already_exists=True)
            state = FollowState.from_edge(edge, already_exists=False)
            follower_name = follower.name

        if state.is_pending:
            logger.info("Follow request %s -> %s pending approval", follower_id, followee_id)
            self._notify(
                followee_id,
                NotificationMessage(
                    title=f"{follower_name} wants to follow you",
                    body="Tap to review the request",
                    category="feed",
                    payload={"type": "follow_request", "userId": follower_id},
                ),
            )
        else:
            self._emit_count(follower_id, followee_id, "add")
            self._notify(
                followee_id,
                NotificationMessage(
                    title=f"{follower_name} started following you",
                    body="Check out their profile!",
                    category="feed",
                    payload={"type": "follow", "userId": follower_id},
                ),
            )
        return state

    def unfollow(self, follower_id: str, followee_id: str) -> bool:
        with get_session() as session:
            edge = _edge(session, follower_id, followee_id)
            if edge is None:
                return False
            was_accepted = edge.status == "accepted"
            session.delete(edge)
        if was_accepted:
            self._emit_count(follower_id, followee_id, "remove")
        return True

    def accept_follow(self, user_id: str, requester_id: str) -> FollowState:
        """Approve ``requester_id``'s request to follow ``user_id``."""
        with get_session() as session:
            edge = _edge(session, requester_id, user_id)
            if edge is None:
                raise NotFoundError("FOLLOW_REQUEST_NOT_FOUND", "No follow request found")
            if edge.status == "accepted":
                return FollowState.from_edge(edge, already_exists=True)
            edge.status = "accepted"
            session.add(edge)
            user_name = require_user(session, user_id).name
            state = FollowState.from_edge(edge, already_exists=False)

        self._emit_count(requester_id, user_id, "add")
        self._notify(
            requester_id,
            NotificationMessage(
                title=f"{user_name} accepted your follow request",
                body="You can now see their posts",
                category="feed",
                payload={"type": "follow_accepted", "userId": user_id},
            ),
        )
        return state

    def deny_follow(self, user_id: str, requester_id: str) -> bool:
        with get_session() as session:
            edge = _edge(session, requester_id, user_id)
            if edge is None or edge.status != "pending":
                raise NotFoundError("FOLLOW_REQUEST_NOT_FOUND", "No follow request found")
            session.delete(edge)
        logger.info("Follow request %s -> %s denied", requester_id, user_id)
        return True

    def pending_requests(self, user_id: str) -> list[FollowEdge]:
        with get_session() as session:
            return list(
                session.scalars(
                    select(FollowEdge)
                    .where(FollowEdge.followee_id == user_id, FollowEdge.status == "pending")
                    .order_by(FollowEdge.created_at)
                )
            )

    def block(self, blocker_id: str, blocked_id: str) -> bool:
        """Block a user and drop follow edges both ways; ``False`` if already blocked."""
        if blocker_id == blocked_id:
            raise ValidationError("SELF_BLOCK", "You cannot block yourself")
        with get_session() as session:
            require_user(session, blocked_id)
            session.execute(
                delete(FollowEdge).where(
                    or_(
                        and_(FollowEdge.follower_id == blocker_id, FollowEdge.followee_id == blocked_id),
                        and_(FollowEdge.follower_id == blocked_id, FollowEdge.followee_id == blocker_id),
                    )
                )
            )
            existing = session.scalars(
                select(Block.id).where(Block.blocker_id == blocker_id, Block.blocked_id == blocked_id)
            ).first()
            if existing is not None:
                return False
            session.add(Block(blocker_id=blocker_id, blocked_id=blocked_id))
        logger.info("User %s blocked %s", blocker_id, blocked_id)
        return True
