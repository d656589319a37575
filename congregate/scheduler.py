"""APScheduler integration."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings
from .services import get_services

logger = logging.getLogger("uvicorn.error")

_scheduler: BackgroundScheduler | None = None


def run_invitation_sweep() -> int:
    expired = get_services().invitations.expire_stale_invitations()
    if expired:
        logger.info("Invitation sweep expired %d invitation(s)", expired)
    return expired


def run_event_reminders() -> dict[str, int]:
    sent = get_services().reminders.send_due_reminders()
    if any(sent.values()):
        logger.info(
            "Reminder sweep sent 24h reminders for %d event(s), 1h for %d",
            sent["24h"],
            sent["1h"],
        )
    return sent


def start_scheduler() -> BackgroundScheduler | None:
    global _scheduler
    if not settings.enable_scheduler:
        return None
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_invitation_sweep,
        "interval",
        minutes=settings.invitation_sweep_minutes,
        id="invitation-sweep",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.add_job(
        run_event_reminders,
        "interval",
        minutes=settings.reminder_sweep_minutes,
        id="event-reminders",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None
