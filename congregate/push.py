"""Push transports used by the notification dispatcher."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import requests

logger = logging.getLogger(__name__)


class PushTransport(Protocol):
    def send(
        self, token: str, title: str, body: str, payload: dict[str, Any] | None
    ) -> bool:
        """Deliver one push; return ``True`` on success."""


class LoggingPushTransport:
    """Development transport that records pushes in the log only."""

    def send(self, token, title, body, payload) -> bool:
        logger.info("Push (log only) to %s: %s", token[:12], title)
        return True


class ExpoPushTransport:
    """Send pushes through the Expo push HTTP API."""

    def __init__(self, endpoint: str, *, timeout: float = 10.0, session: requests.Session | None = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, token, title, body, payload) -> bool:
        message = {
            "to": token,
            "title": title,
            "body": body,
            "data": payload or {},
            "sound": "default",
        }
        try:
            response = self.session.post(self.endpoint, json=message, timeout=self.timeout)
        except requests.Timeout:
            logger.warning("Push to %s timed out after %.1fs", token[:12], self.timeout)
            return False
        except requests.RequestException as exc:
            logger.warning("Push to %s failed: %s", token[:12], exc)
            return False

        if response.status_code != 200:
            logger.warning(
                "Push provider rejected %s: %s - %s",
                token[:12],
                response.status_code,
                response.text[:200],
            )
            return False
        ticket = (response.json() or {}).get("data") or {}
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if ticket.get("status") != "ok":
            logger.warning("Push ticket error for %s: %s", token[:12], ticket.get("message"))
            return False
        return True


def build_push_transport(settings) -> PushTransport:
    if settings.push_backend == "expo":
        return ExpoPushTransport(settings.push_endpoint, timeout=settings.push_timeout_seconds)
    return LoggingPushTransport()
