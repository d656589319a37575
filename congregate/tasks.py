"""Bounded background task runner for best-effort side effects."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

logger = logging.getLogger(__name__)


class TaskRunner:
    """Submit fire-and-forget work to a bounded thread pool.

    Every task is wrapped so that failures are logged with a traceback and
    counted instead of vanishing. ``queue_size`` caps the number of tasks
    queued or running; ``submit`` waits up to ``enqueue_timeout`` seconds for
    room and then drops the task with an error log.

    ``max_workers=0`` runs tasks inline on the submitting thread, which keeps
    tests deterministic while preserving the failure isolation.
    """

    def __init__(
        self,
        *,
        max_workers: int = 8,
        queue_size: int = 1000,
        enqueue_timeout: float = 5.0,
        name: str = "congregate",
    ) -> None:
        self.inline = max_workers <= 0
        self._executor = (
            None
            if self.inline
            else ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        )
        self._slots = threading.BoundedSemaphore(max(queue_size, 1))
        self._enqueue_timeout = enqueue_timeout
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending = 0
        self.stats = {"submitted": 0, "succeeded": 0, "failed": 0, "rejected": 0}

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """Queue ``fn``; return ``False`` when the task was rejected."""
        if self.inline:
            self._count("submitted")
            self._run(name, fn, args, kwargs)
            return True
        if not self._slots.acquire(timeout=self._enqueue_timeout):
            self._count("rejected")
            logger.error("Task queue full; dropped background task %s", name)
            return False
        with self._lock:
            self._pending += 1
            self.stats["submitted"] += 1
        try:
            future = self._executor.submit(self._run, name, fn, args, kwargs)
        except RuntimeError:
            self._release()
            self._count("rejected")
            logger.error("Task runner is shut down; dropped background task %s", name)
            return False
        future.add_done_callback(self._on_done)
        return True

    def _run(self, name: str, fn: Callable[..., Any], args: tuple, kwargs: dict) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            self._count("failed")
            logger.exception("Background task %s failed", name)
        else:
            self._count("succeeded")

    def _on_done(self, _: Future) -> None:
        self._release()

    def _release(self) -> None:
        self._slots.release()
        with self._lock:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def _count(self, key: str) -> None:
        with self._lock:
            self.stats[key] += 1

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no tasks are queued or running."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
