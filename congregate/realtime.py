"""Fire-and-forget broadcast of live counters to connected clients."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

BROADCAST = "*"

Listener = Callable[[str, str, dict[str, Any]], None]


class Broadcaster:
    """In-process fan-out of ``(target, event_name, payload)`` messages.

    A socket server registers a listener. Listener errors are logged and
    dropped.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def emit(self, target: str, event_name: str, payload: dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(target, event_name, payload)
            except Exception:
                logger.exception("Realtime listener failed for %s", event_name)
