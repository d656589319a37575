"""Dual-channel notification delivery.

Every notification is first written as an in-app record; that write is the
only step allowed to fail the call. Push delivery happens afterwards on the
task runner: the user's category preference is consulted through the
preference cache and each registered device is attempted independently.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select, update

from .database import get_session
from .errors import EngagementError, NotFoundError, PersistFailedError, ValidationError
from .models import DeviceToken, Notification
from .preferences import (
    NOTIFICATION_CATEGORIES,
    NotificationPreferences,
    PreferenceCache,
    load_preferences_from_store,
)
from .push import PushTransport
from .tasks import TaskRunner
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationMessage:
    title: str
    body: str
    category: str
    payload: dict[str, Any] | None = None


@dataclass
class FanOutResult:
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.delivered) + len(self.failed)


def _validate_category(category: str) -> None:
    if category not in NOTIFICATION_CATEGORIES:
        raise ValidationError("INVALID_CATEGORY", f"Unknown category {category!r}")


class NotificationDispatcher:
    def __init__(
        self,
        *,
        cache: PreferenceCache,
        transport: PushTransport,
        runner: TaskRunner,
        preference_loader=load_preferences_from_store,
    ) -> None:
        self.cache = cache
        self.transport = transport
        self.runner = runner
        self._preference_loader = preference_loader
        self._stats_lock = threading.Lock()
        self.stats = {
            "records": 0,
            "pushes_sent": 0,
            "pushes_failed": 0,
            "push_disabled": 0,
            "no_devices": 0,
        }

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def notify(self, user_id: str, message: NotificationMessage) -> Notification:
        """Persist the in-app record, then queue push delivery."""
        _validate_category(message.category)
        try:
            with get_session() as session:
                record = Notification(
                    user_id=user_id,
                    category=message.category,
                    title=message.title,
                    body=message.body,
                    payload=message.payload,
                    is_read=False,
                )
                session.add(record)
                session.flush()
        except Exception as exc:
            logger.error("Failed to persist notification for user %s: %s", user_id, exc)
            raise PersistFailedError(str(exc)) from exc

        self._bump("records")
        logger.info("Created in-app notification for user %s: %s", user_id, message.title)
        self.runner.submit(f"push:{user_id}", self._push_to_devices, user_id, message)
        return record

    def notify_many(self, user_ids: Iterable[str], message: NotificationMessage) -> FanOutResult:
        """Notify every user; one recipient's failure never stops the rest."""
        _validate_category(message.category)
        result = FanOutResult()
        for user_id in dict.fromkeys(user_ids):
            try:
                self.notify(user_id, message)
            except EngagementError as exc:
                result.failed[user_id] = exc.code
            else:
                result.delivered.append(user_id)
        logger.info(
            "Batch notification '%s': %d delivered, %d failed",
            message.title,
            len(result.delivered),
            len(result.failed),
        )
        return result

    def _resolve_preferences(self, user_id: str) -> NotificationPreferences | None:
        try:
            return self.cache.load(user_id, self._preference_loader)
        except Exception:
            logger.exception("Preference lookup failed for user %s; defaulting to enabled", user_id)
            return NotificationPreferences()

    def _push_to_devices(self, user_id: str, message: NotificationMessage) -> None:
        prefs = self._resolve_preferences(user_id)
        if prefs is None:
            logger.warning("Skipping push for unknown user %s", user_id)
            return
        if not prefs.allows(message.category):
            self._bump("push_disabled")
            logger.info("User %s disabled push for category %s", user_id, message.category)
            return

        with get_session() as session:
            tokens = list(
                session.scalars(select(DeviceToken.token).where(DeviceToken.user_id == user_id))
            )
        if not tokens:
            self._bump("no_devices")
            logger.info("No push tokens for user %s", user_id)
            return

        logger.info("Sending push to %d device(s) for user %s", len(tokens), user_id)
        for token in tokens:
            self._send_to_device(user_id, token, message)

    def _send_to_device(self, user_id: str, token: str, message: NotificationMessage) -> None:
        try:
            delivered = self.transport.send(token, message.title, message.body, message.payload)
        except Exception as exc:
            delivered = False
            logger.warning("Push to device of user %s raised: %s", user_id, exc)
        if not delivered:
            self._bump("pushes_failed")
            logger.warning("Push failed for a device of user %s; skipping", user_id)
            return
        self._bump("pushes_sent")
        with get_session() as session:
            session.execute(
                update(DeviceToken)
                .where(DeviceToken.token == token)
                .values(last_used_at=utcnow())
            )


# -------- inbox and device registry --------


def list_notifications(user_id: str, *, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    with get_session() as session:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)
        return list(session.scalars(stmt))


def mark_notification_read(notification_id: str, user_id: str) -> Notification:
    with get_session() as session:
        record = session.get(Notification, notification_id)
        if record is None or record.user_id != user_id:
            raise NotFoundError("NOTIFICATION_NOT_FOUND", "Notification not found")
        if not record.is_read:
            record.is_read = True
            record.read_at = utcnow()
            session.add(record)
        return record


def register_device(user_id: str, token: str, platform: str | None = None) -> DeviceToken:
    """Register a push token; a token already on file moves to ``user_id``."""
    cleaned = (token or "").strip()
    if not cleaned:
        raise ValidationError("INVALID_TOKEN", "Device token is required")
    with get_session() as session:
        device = session.scalars(
            select(DeviceToken).where(DeviceToken.token == cleaned)
        ).first()
        if device is None:
            device = DeviceToken(user_id=user_id, token=cleaned, platform=platform)
        else:
            device.user_id = user_id
            device.platform = platform or device.platform
            device.last_used_at = utcnow()
        session.add(device)
        session.flush()
        return device


def unregister_device(user_id: str, token: str) -> bool:
    with get_session() as session:
        device = session.scalars(
            select(DeviceToken).where(
                DeviceToken.token == token, DeviceToken.user_id == user_id
            )
        ).first()
        if device is None:
            return False
        session.delete(device)
        return True
