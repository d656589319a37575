"""Direct and radius-based event invitations."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import audience
from .database import get_session
from .errors import NotAuthorizedError, NotFoundError, StateConflictError, ValidationError
from .events import can_manage_event, require_active_event, require_event, require_user
from .geo import clamp_radius
from .models import RSVP, Event, Invitation, User
from .notifications import NotificationDispatcher, NotificationMessage
from .rsvp import RsvpLedger, RsvpOutcome
from .tasks import TaskRunner
from .utils import truncate_text, utcnow

logger = logging.getLogger(__name__)

INVITED = "invited"
SKIPPED = "skipped"

ALREADY_ATTENDING = "ALREADY_ATTENDING"
ALREADY_INVITED = "ALREADY_INVITED"
USER_NOT_FOUND = "USER_NOT_FOUND"
SELF_INVITE = "SELF_INVITE"


@dataclass(frozen=True)
class InviteOutcome:
    invitee_id: str
    status: str
    reason: str | None = None
    invitation_id: str | None = None
    distance: float | None = None

    @property
    def invited(self) -> bool:
        return self.status == INVITED

    def as_dict(self) -> dict:
        data = {"userId": self.invitee_id, "status": self.status}
        if self.reason:
            data["reason"] = self.reason
        if self.invitation_id:
            data["invitationId"] = self.invitation_id
        if self.distance is not None:
            data["distance"] = self.distance
        return data


@dataclass
class BulkInviteResult:
    event_id: str
    outcomes: list[InviteOutcome] = field(default_factory=list)
    radius: float | None = None

    @property
    def invited(self) -> list[InviteOutcome]:
        return [outcome for outcome in self.outcomes if outcome.invited]

    @property
    def skipped(self) -> list[InviteOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.invited]


@dataclass(frozen=True)
class InvitationResponse:
    invitation: Invitation
    rsvp: RsvpOutcome | None = None


def _skip(invitee_id: str, reason: str, distance: float | None = None) -> InviteOutcome:
    return InviteOutcome(invitee_id=invitee_id, status=SKIPPED, reason=reason, distance=distance)


class InvitationService:
    """Pending invitations move once to accepted, declined or expired."""

    def __init__(
        self,
        *,
        ledger: RsvpLedger,
        dispatcher: NotificationDispatcher,
        runner: TaskRunner,
        min_radius: float = 1.0,
        max_radius: float = 100.0,
        default_radius: float = 30.0,
    ) -> None:
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.runner = runner
        self.min_radius = min_radius
        self.max_radius = max_radius
        self.default_radius = default_radius

    def clamp(self, radius) -> float:
        if radius is None:
            radius = self.default_radius
        return clamp_radius(radius, minimum=self.min_radius, maximum=self.max_radius)

    # -------- invite --------

    def _open_event(self, session: Session, event_id: str, inviter_id: str) -> Event:
        event = require_active_event(session, event_id)
        if event.has_ended():
            raise StateConflictError("EVENT_PASSED", "This event has already happened")
        if can_manage_event(session, event, inviter_id):
            return event
        status = session.scalars(
            select(RSVP.status).where(RSVP.event_id == event_id, RSVP.user_id == inviter_id)
        ).first()
        if status not in audience.ATTENDEE_STATUSES:
            raise NotAuthorizedError("NOT_AUTHORIZED", "Only the host or attendees can invite")
        return event

    def _invite_one(
        self,
        session: Session,
        event: Event,
        inviter_id: str,
        invitee_id: str,
        distance: float | None = None,
    ) -> InviteOutcome:
        if invitee_id == inviter_id:
            return _skip(invitee_id, SELF_INVITE, distance)
        invitee = session.get(User, invitee_id)
        if invitee is None or invitee.deactivated_at is not None:
            return _skip(invitee_id, USER_NOT_FOUND, distance)
        rsvp_status = session.scalars(
            select(RSVP.status).where(RSVP.event_id == event.id, RSVP.user_id == invitee_id)
        ).first()
        if rsvp_status == "going":
            return _skip(invitee_id, ALREADY_ATTENDING, distance)
        existing = session.scalars(
            select(Invitation.id).where(
                Invitation.event_id == event.id, Invitation.invitee_id == invitee_id
            )
        ).first()
        if existing is not None:
            return _skip(invitee_id, ALREADY_INVITED, distance)

        invitation = Invitation(
            event_id=event.id, inviter_id=inviter_id, invitee_id=invitee_id, status="pending"
        )
        try:
            with session.begin_nested():
                session.add(invitation)
        except IntegrityError:
            return _skip(invitee_id, ALREADY_INVITED, distance)
        return InviteOutcome(
            invitee_id=invitee_id,
            status=INVITED,
            invitation_id=invitation.id,
            distance=distance,
        )

    def invite(self, event_id: str, inviter_id: str, invitee_id: str) -> InviteOutcome:
        return self.invite_users(event_id, inviter_id, [invitee_id]).outcomes[0]

    def invite_users(self, event_id: str, inviter_id: str, invitee_ids: Iterable[str]) -> BulkInviteResult:
        """Invite each user; already-attending or already-invited users are skipped."""
        with get_session() as session:
            event = self._open_event(session, event_id, inviter_id)
            inviter_name = require_user(session, inviter_id).name
            result = BulkInviteResult(event_id=event_id)
            for invitee_id in dict.fromkeys(invitee_ids):
                result.outcomes.append(self._invite_one(session, event, inviter_id, invitee_id))
            title = event.title

        self._announce(result, inviter_name, title)
        return result

    def invite_nearby(self, event_id: str, inviter_id: str, radius=None) -> BulkInviteResult:
        """Invite every user within ``radius`` miles of the event, nearest first."""
        radius = self.clamp(radius)
        with get_session() as session:
            event = require_event(session, event_id)
            if not can_manage_event(session, event, inviter_id):
                raise NotAuthorizedError("NOT_AUTHORIZED", "Only the host can invite nearby users")
            event = self._open_event(session, event_id, inviter_id)
            if not event.has_coordinates:
                raise ValidationError("MISSING_COORDINATES", "Event has no location coordinates")
            inviter_name = require_user(session, inviter_id).name
            matches = audience.users_within_radius(
                session,
                latitude=event.latitude,
                longitude=event.longitude,
                radius=radius,
                exclude=[event.host_id, inviter_id],
            )
            result = BulkInviteResult(event_id=event_id, radius=radius)
            for match in matches:
                result.outcomes.append(
                    self._invite_one(session, event, inviter_id, match.user_id, match.distance)
                )
            title = event.title

        logger.info(
            "Invite-nearby for event %s within %.1f mi: %d invited, %d skipped",
            event_id,
            radius,
            len(result.invited),
            len(result.skipped),
        )
        self._announce(result, inviter_name, title)
        return result

    def count_nearby_users(self, event_id: str, radius=None) -> dict:
        """How many users an invite-nearby would reach right now."""
        radius = self.clamp(radius)
        with get_session() as session:
            event = require_active_event(session, event_id)
            if not event.has_coordinates:
                raise ValidationError("MISSING_COORDINATES", "Event has no location coordinates")
            excluded = {event.host_id}
            excluded.update(audience.event_attendees(session, event_id, statuses=("going",)))
            excluded.update(audience.invited_users(session, event_id))
            matches = audience.users_within_radius(
                session,
                latitude=event.latitude,
                longitude=event.longitude,
                radius=radius,
                exclude=excluded,
            )
        return {"count": len(matches), "radius": radius}

    def _announce(self, result: BulkInviteResult, inviter_name: str, title: str) -> None:
        for outcome in result.invited:
            message = NotificationMessage(
                title="You're invited",
                body=f"{inviter_name} invited you to {truncate_text(title, 60)}",
                category="event",
                payload={
                    "type": "event_invitation",
                    "eventId": result.event_id,
                    "invitationId": outcome.invitation_id,
                },
            )
            self.runner.submit(
                f"invite-notify:{outcome.invitation_id}",
                self.dispatcher.notify,
                outcome.invitee_id,
                message,
            )

    # -------- respond --------

    def _pending_for(self, session: Session, invitation_id: str, user_id: str) -> Invitation:
        invitation = session.get(Invitation, invitation_id)
        if invitation is None:
            raise NotFoundError("INVITATION_NOT_FOUND", "Invitation not found")
        if invitation.invitee_id != user_id:
            raise NotAuthorizedError("NOT_AUTHORIZED", "This invitation belongs to someone else")
        if invitation.status != "pending":
            raise StateConflictError(
                "INVITATION_NOT_PENDING", f"Invitation is already {invitation.status}"
            )
        return invitation

    def accept(self, invitation_id: str, user_id: str) -> InvitationResponse:
        """Accept a pending invitation, which RSVPs the invitee as going."""
        expired = False
        outcome = None
        with get_session() as session:
            invitation = self._pending_for(session, invitation_id, user_id)
            event = require_event(session, invitation.event_id)
            if event.is_canceled:
                raise StateConflictError("EVENT_CANCELED", "This event has been canceled")
            invitation.responded_at = utcnow()
            if event.has_ended():
                invitation.status = "expired"
                expired = True
            else:
                outcome = self.ledger.monitor.record(session, event, user_id, "going")
                invitation.status = "accepted"
            session.add(invitation)
            inviter_id = invitation.inviter_id
            invitee_name = require_user(session, user_id).name
            title = event.title

        if expired:
            logger.info("Invitation %s expired on accept; event has passed", invitation_id)
            raise StateConflictError("EVENT_PASSED", "This event has already happened")

        self.ledger.monitor.publish(outcome)
        message = NotificationMessage(
            title="Invitation accepted",
            body=f"{invitee_name} is going to {truncate_text(title, 60)}",
            category="event",
            payload={"type": "invitation_accepted", "eventId": invitation.event_id},
        )
        self.runner.submit(
            f"invite-accepted:{invitation_id}", self.dispatcher.notify, inviter_id, message
        )
        return InvitationResponse(invitation=invitation, rsvp=outcome)

    def decline(self, invitation_id: str, user_id: str) -> InvitationResponse:
        with get_session() as session:
            invitation = self._pending_for(session, invitation_id, user_id)
            invitation.status = "declined"
            invitation.responded_at = utcnow()
            session.add(invitation)
        return InvitationResponse(invitation=invitation)

    # -------- maintenance --------

    def expire_stale_invitations(self, now=None) -> int:
        """Expire pending invitations whose event has ended or been canceled."""
        now = now or utcnow()
        expired = 0
        with get_session() as session:
            rows = session.execute(
                select(Invitation, Event)
                .join(Event, Event.id == Invitation.event_id)
                .where(Invitation.status == "pending")
            )
            for invitation, event in rows:
                if event.is_canceled or event.has_ended(now):
                    invitation.status = "expired"
                    invitation.responded_at = now
                    session.add(invitation)
                    expired += 1
        logger.info("Expired %d stale invitation(s)", expired)
        return expired
