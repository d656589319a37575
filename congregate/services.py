"""Process-wide wiring of the engagement services."""

from __future__ import annotations

from dataclasses import dataclass

from . import config as config_module
from .follows import FollowGate
from .invitations import InvitationService
from .notifications import NotificationDispatcher
from .preferences import PreferenceCache, build_preference_cache
from .push import PushTransport, build_push_transport
from .realtime import Broadcaster
from .reminders import EventReminders
from .rsvp import RsvpLedger, ThresholdMonitor
from .tasks import TaskRunner


@dataclass
class Services:
    runner: TaskRunner
    cache: PreferenceCache
    transport: PushTransport
    broadcaster: Broadcaster
    dispatcher: NotificationDispatcher
    monitor: ThresholdMonitor
    ledger: RsvpLedger
    invitations: InvitationService
    follows: FollowGate
    reminders: EventReminders

    def shutdown(self, wait: bool = True) -> None:
        self.runner.shutdown(wait=wait)


def build_services(
    settings=None,
    *,
    runner: TaskRunner | None = None,
    cache: PreferenceCache | None = None,
    transport: PushTransport | None = None,
    broadcaster: Broadcaster | None = None,
) -> Services:
    settings = settings or config_module.settings
    runner = runner or TaskRunner(
        max_workers=settings.notification_workers,
        queue_size=settings.notification_queue_size,
        enqueue_timeout=settings.enqueue_timeout_seconds,
    )
    cache = cache or build_preference_cache(settings)
    transport = transport or build_push_transport(settings)
    broadcaster = broadcaster or Broadcaster()
    dispatcher = NotificationDispatcher(cache=cache, transport=transport, runner=runner)
    monitor = ThresholdMonitor(
        dispatcher=dispatcher,
        runner=runner,
        broadcaster=broadcaster,
        threshold=settings.popularity_threshold,
        radius_miles=settings.proximity_radius_miles,
    )
    ledger = RsvpLedger(monitor)
    invitations = InvitationService(
        ledger=ledger,
        dispatcher=dispatcher,
        runner=runner,
        min_radius=settings.min_radius_miles,
        max_radius=settings.max_radius_miles,
        default_radius=settings.default_invite_radius_miles,
    )
    follows = FollowGate(dispatcher=dispatcher, runner=runner, broadcaster=broadcaster)
    return Services(
        runner=runner,
        cache=cache,
        transport=transport,
        broadcaster=broadcaster,
        dispatcher=dispatcher,
        monitor=monitor,
        ledger=ledger,
        invitations=invitations,
        follows=follows,
        reminders=EventReminders(dispatcher=dispatcher),
    )


_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Services | None) -> Services | None:
    """Swap the process-wide services; returns the previous bundle."""
    global _services
    previous, _services = _services, services
    return previous


def shutdown_services(wait: bool = True) -> None:
    """Drain the background runner of the current bundle, if one was built."""
    global _services
    services, _services = _services, None
    if services is not None:
        services.shutdown(wait=wait)
