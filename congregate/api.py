"""FastAPI application for congregate."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, time
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import audience, events, notifications, preferences
from .database import SessionLocal
from .errors import EngagementError
from .invitations import BulkInviteResult
from .models import FollowEdge, Invitation, Notification, User
from .scheduler import start_scheduler, stop_scheduler
from .services import Services, get_services, shutdown_services
from .storage import init_db

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("congregate")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()
        shutdown_services(wait=True)


app = FastAPI(title="congregate", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def services() -> Services:
    return get_services()


def current_user_id(x_user_id: str | None = Header(None)) -> str:
    """Resolve the acting user from the upstream session resolver's header."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    with SessionLocal() as db:
        user = db.get(User, user_id)
        if user is None or user.deactivated_at is not None:
            raise HTTPException(status_code=401, detail="Unknown user")
    return user_id


# -------- error handling --------


@app.exception_handler(EngagementError)
async def engagement_error_handler(request: Request, exc: EngagementError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(exc.as_dict(), status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# -------- payloads --------


class EventPayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    event_date: date
    start_time: time
    end_date: date | None = None
    end_time: time | None = None
    description: str | None = None
    location: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    community_id: str | None = None
    visibility: str = "public"


class RsvpPayload(BaseModel):
    status: str


class InvitePayload(BaseModel):
    user_ids: list[str] = Field(..., min_length=1)


class InviteNearbyPayload(BaseModel):
    radius: float | None = None


class PreferencesPayload(BaseModel):
    dms: bool | None = None
    communities: bool | None = None
    forums: bool | None = None
    feed: bool | None = None


class DevicePayload(BaseModel):
    token: str
    platform: str | None = None


# -------- serializers --------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _serialize_invitation(invitation: Invitation) -> dict:
    return {
        "id": invitation.id,
        "eventId": invitation.event_id,
        "inviterId": invitation.inviter_id,
        "inviteeId": invitation.invitee_id,
        "status": invitation.status,
        "respondedAt": _iso(invitation.responded_at),
    }


def _serialize_bulk(result: BulkInviteResult) -> dict:
    payload = {
        "eventId": result.event_id,
        "invited": [outcome.as_dict() for outcome in result.invited],
        "skipped": [outcome.as_dict() for outcome in result.skipped],
    }
    if result.radius is not None:
        payload["radius"] = result.radius
    return payload


def _serialize_notification(record: Notification) -> dict:
    return {
        "id": record.id,
        "category": record.category,
        "title": record.title,
        "body": record.body,
        "payload": record.payload or {},
        "isRead": record.is_read,
        "createdAt": _iso(record.created_at),
    }


def _serialize_follow_request(edge: FollowEdge) -> dict:
    return {
        "followerId": edge.follower_id,
        "status": edge.status,
        "createdAt": _iso(edge.created_at),
    }


# -------- routes --------


@app.get("/api/v1/health")
def api_health(svc: Services = Depends(services)):
    return {"status": "ok", "version": APP_VERSION, "tasks": dict(svc.runner.stats)}


@app.post("/api/v1/events", status_code=201)
def api_create_event(
    payload: EventPayload,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    event = events.create_event(
        user_id, dispatcher=svc.dispatcher, runner=svc.runner, **payload.model_dump()
    )
    return {
        "eventId": event.id,
        "communityId": event.community_id,
        "startsAt": _iso(event.starts_at),
        "status": event.status,
    }


@app.put("/api/v1/events/{event_id}/rsvp")
def api_set_rsvp(
    event_id: str,
    payload: RsvpPayload,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    outcome = svc.ledger.set_rsvp(event_id, user_id, payload.status)
    return {
        "eventId": event_id,
        "status": outcome.status,
        "previousStatus": outcome.previous_status,
        "changed": outcome.changed,
        "counts": outcome.counts,
    }


@app.delete("/api/v1/events/{event_id}/rsvp")
def api_cancel_rsvp(
    event_id: str,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    return {"removed": svc.ledger.cancel_rsvp(event_id, user_id)}


@app.post("/api/v1/events/{event_id}/rsvp/confirm")
def api_confirm_attendance(
    event_id: str,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    rsvp = svc.ledger.confirm_attendance(event_id, user_id)
    return {"eventId": event_id, "confirmedAt": _iso(rsvp.confirmed_at)}


@app.put("/api/v1/events/{event_id}/bookmark")
def api_bookmark_event(event_id: str, user_id: str = Depends(current_user_id)):
    created = events.bookmark_event(event_id, user_id)
    return {"bookmarked": True, "created": created}


@app.delete("/api/v1/events/{event_id}/bookmark")
def api_unbookmark_event(event_id: str, user_id: str = Depends(current_user_id)):
    removed = events.unbookmark_event(event_id, user_id)
    return {"bookmarked": False, "removed": removed}


@app.post("/api/v1/events/{event_id}/cancel")
def api_cancel_event(
    event_id: str,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    event = events.cancel_event(
        event_id, user_id, dispatcher=svc.dispatcher, runner=svc.runner
    )
    return {"eventId": event.id, "status": event.status, "canceledAt": _iso(event.canceled_at)}


@app.post("/api/v1/events/{event_id}/invitations")
def api_invite_users(
    event_id: str,
    payload: InvitePayload,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    result = svc.invitations.invite_users(event_id, user_id, payload.user_ids)
    return _serialize_bulk(result)


@app.post("/api/v1/events/{event_id}/invite-nearby")
def api_invite_nearby(
    event_id: str,
    payload: InviteNearbyPayload,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    result = svc.invitations.invite_nearby(event_id, user_id, payload.radius)
    return _serialize_bulk(result)


@app.get("/api/v1/events/{event_id}/nearby-users-count")
def api_nearby_users_count(
    event_id: str,
    radius: float | None = Query(None),
    _: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    return svc.invitations.count_nearby_users(event_id, radius)


@app.get("/api/v1/events/{event_id}/connections-attending")
def api_connections_attending(
    event_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    events.require_event(db, event_id)
    user_ids = audience.connections_attending(db, event_id, user_id)
    users = {
        user.id: user
        for user in db.scalars(select(User).where(User.id.in_(user_ids)))
    } if user_ids else {}
    return {
        "users": [
            {"id": uid, "name": users[uid].name} for uid in user_ids if uid in users
        ]
    }


@app.post("/api/v1/invitations/{invitation_id}/accept")
def api_accept_invitation(
    invitation_id: str,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    response = svc.invitations.accept(invitation_id, user_id)
    return _serialize_invitation(response.invitation)


@app.post("/api/v1/invitations/{invitation_id}/decline")
def api_decline_invitation(
    invitation_id: str,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    response = svc.invitations.decline(invitation_id, user_id)
    return _serialize_invitation(response.invitation)


@app.post("/api/v1/users/{target_id}/follow")
def api_follow(
    target_id: str,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    return svc.follows.follow(user_id, target_id).as_dict()


@app.delete("/api/v1/users/{target_id}/follow")
def api_unfollow(
    target_id: str,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    return {"removed": svc.follows.unfollow(user_id, target_id)}


@app.post("/api/v1/users/{target_id}/block")
def api_block(
    target_id: str,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    return {"blocked": True, "created": svc.follows.block(user_id, target_id)}


@app.get("/api/v1/follow-requests")
def api_follow_requests(
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    requests = svc.follows.pending_requests(user_id)
    return {"requests": [_serialize_follow_request(edge) for edge in requests]}


@app.post("/api/v1/follow-requests/{requester_id}/accept")
def api_accept_follow(
    requester_id: str,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    state = svc.follows.accept_follow(user_id, requester_id)
    return {**state.as_dict(), "alreadyAccepted": state.already_exists}


@app.post("/api/v1/follow-requests/{requester_id}/deny")
def api_deny_follow(
    requester_id: str,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    return {"denied": svc.follows.deny_follow(user_id, requester_id)}


@app.get("/api/v1/me/notification-preferences")
def api_get_preferences(user_id: str = Depends(current_user_id)):
    return preferences.get_notification_preferences(user_id).as_dict()


@app.patch("/api/v1/me/notification-preferences")
def api_update_preferences(
    payload: PreferencesPayload,
    user_id: str = Depends(current_user_id),
    svc: Services = Depends(services),
):
    updates = payload.model_dump(exclude_unset=True)
    prefs = preferences.update_notification_preferences(svc.cache, user_id, updates)
    return prefs.as_dict()


@app.post("/api/v1/me/devices", status_code=201)
def api_register_device(payload: DevicePayload, user_id: str = Depends(current_user_id)):
    device = notifications.register_device(user_id, payload.token, payload.platform)
    return {"token": device.token, "platform": device.platform}


@app.delete("/api/v1/me/devices/{token}", status_code=204)
def api_unregister_device(token: str, user_id: str = Depends(current_user_id)):
    if not notifications.unregister_device(user_id, token):
        raise HTTPException(status_code=404, detail="Device not registered")
    return Response(status_code=204)


@app.get("/api/v1/notifications")
def api_list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(current_user_id),
):
    records = notifications.list_notifications(user_id, unread_only=unread_only, limit=limit)
    return {"notifications": [_serialize_notification(record) for record in records]}


@app.post("/api/v1/notifications/{notification_id}/read")
def api_mark_notification_read(notification_id: str, user_id: str = Depends(current_user_id)):
    record = notifications.mark_notification_read(notification_id, user_id)
    return _serialize_notification(record)
