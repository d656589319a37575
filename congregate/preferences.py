"""Per-user notification preferences and their read-through cache."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

import redis
from sqlalchemy.orm import Session

from .database import get_session
from .errors import NotFoundError, ValidationError
from .models import User

logger = logging.getLogger(__name__)

# Event notifications reuse the community switch.
CATEGORY_TO_PREFERENCE = {
    "dm": "dms",
    "community": "communities",
    "event": "communities",
    "forum": "forums",
    "feed": "feed",
}
NOTIFICATION_CATEGORIES = frozenset(CATEGORY_TO_PREFERENCE)

PREFERENCE_COLUMNS = {
    "dms": "notify_dms",
    "communities": "notify_communities",
    "forums": "notify_forums",
    "feed": "notify_feed",
}


@dataclass(frozen=True)
class NotificationPreferences:
    dms: bool = True
    communities: bool = True
    forums: bool = True
    feed: bool = True

    def allows(self, category: str) -> bool:
        return getattr(self, CATEGORY_TO_PREFERENCE[category])

    def as_dict(self) -> dict[str, bool]:
        return asdict(self)

    @classmethod
    def from_user(cls, user: User) -> "NotificationPreferences":
        def _enabled(value: bool | None) -> bool:
            return True if value is None else bool(value)

        return cls(
            dms=_enabled(user.notify_dms),
            communities=_enabled(user.notify_communities),
            forums=_enabled(user.notify_forums),
            feed=_enabled(user.notify_feed),
        )


Loader = Callable[[str], "NotificationPreferences | None"]


class PreferenceCache:
    """Interface for preference caches keyed by user id."""

    def get(self, user_id: str) -> NotificationPreferences | None:
        raise NotImplementedError

    def set(self, user_id: str, prefs: NotificationPreferences) -> None:
        raise NotImplementedError

    def invalidate(self, user_id: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def load(self, user_id: str, loader: Loader) -> NotificationPreferences | None:
        """Read-through lookup: return the cached value or populate it."""
        cached = self.get(user_id)
        if cached is not None:
            return cached
        prefs = loader(user_id)
        if prefs is not None:
            self.set(user_id, prefs)
        return prefs


class InMemoryPreferenceCache(PreferenceCache):
    """Process-local TTL cache safe for concurrent requests.

    Each user has a generation counter bumped by :meth:`invalidate`. A miss
    remembers the generation it started from and only stores its result if no
    invalidation happened while the store was being read, so a load racing a
    preference update can never park the pre-update value in the cache.
    """

    def __init__(self, ttl_seconds: float = 300, *, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[NotificationPreferences, float]] = {}
        self._generations: dict[str, int] = {}

    def get(self, user_id: str) -> NotificationPreferences | None:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            prefs, cached_at = entry
            if self._clock() - cached_at >= self.ttl_seconds:
                del self._entries[user_id]
                return None
            return prefs

    def set(self, user_id: str, prefs: NotificationPreferences) -> None:
        with self._lock:
            self._entries[user_id] = (prefs, self._clock())

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)
            self._generations[user_id] = self._generations.get(user_id, 0) + 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            for user_id in list(self._generations):
                self._generations[user_id] += 1

    def load(self, user_id: str, loader: Loader) -> NotificationPreferences | None:
        with self._lock:
            generation = self._generations.get(user_id, 0)
        cached = self.get(user_id)
        if cached is not None:
            return cached
        prefs = loader(user_id)
        if prefs is None:
            return None
        with self._lock:
            if self._generations.get(user_id, 0) == generation:
                self._entries[user_id] = (prefs, self._clock())
        return prefs

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisPreferenceCache(PreferenceCache):
    """Shared cache for multi-instance deployments, backed by Redis ``SETEX``.

    Like the in-memory cache, each user has a generation counter. ``invalidate``
    bumps it with ``INCR`` and a read-through miss only writes its value under
    ``WATCH`` when the counter still matches the one read before loading.
    """

    def __init__(
        self,
        client: Any,
        ttl_seconds: int = 300,
        prefix: str = "prefs:user:",
        generation_prefix: str = "prefs:gen:",
    ):
        self.redis = client
        self.ttl_seconds = int(ttl_seconds)
        self.prefix = prefix
        self.generation_prefix = generation_prefix

    def _key(self, user_id: str) -> str:
        return f"{self.prefix}{user_id}"

    def _generation_key(self, user_id: str) -> str:
        return f"{self.generation_prefix}{user_id}"

    def get(self, user_id: str) -> NotificationPreferences | None:
        try:
            raw = self.redis.get(self._key(user_id))
        except Exception as exc:
            logger.warning("Redis preference read failed for user %s: %s", user_id, exc)
            return None
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return NotificationPreferences(**json.loads(raw))

    def set(self, user_id: str, prefs: NotificationPreferences) -> None:
        try:
            self.redis.setex(
                self._key(user_id), self.ttl_seconds, json.dumps(prefs.as_dict())
            )
        except Exception as exc:
            logger.warning("Redis preference write failed for user %s: %s", user_id, exc)

    def invalidate(self, user_id: str) -> None:
        generation_key = self._generation_key(user_id)
        with self.redis.pipeline() as pipe:
            pipe.incr(generation_key)
            # Outlives any in-flight load.
            pipe.expire(generation_key, self.ttl_seconds * 10)
            pipe.delete(self._key(user_id))
            pipe.execute()

    def clear(self) -> None:
        keys = list(self.redis.scan_iter(match=f"{self.prefix}*"))
        if keys:
            self.redis.delete(*keys)

    def load(self, user_id: str, loader: Loader) -> NotificationPreferences | None:
        try:
            generation = self.redis.get(self._generation_key(user_id))
        except Exception as exc:
            logger.warning("Redis generation read failed for user %s: %s", user_id, exc)
            return loader(user_id)
        cached = self.get(user_id)
        if cached is not None:
            return cached
        prefs = loader(user_id)
        if prefs is not None:
            self._store_if_current(user_id, prefs, generation)
        return prefs

    def _store_if_current(
        self, user_id: str, prefs: NotificationPreferences, generation: Any
    ) -> None:
        generation_key = self._generation_key(user_id)
        try:
            with self.redis.pipeline() as pipe:
                pipe.watch(generation_key)
                if pipe.get(generation_key) != generation:
                    logger.debug("Preferences for user %s changed during load; not caching", user_id)
                    return
                pipe.multi()
                pipe.setex(self._key(user_id), self.ttl_seconds, json.dumps(prefs.as_dict()))
                pipe.execute()
        except redis.WatchError:
            logger.debug("Preferences for user %s changed during load; not caching", user_id)
        except redis.RedisError as exc:
            logger.warning("Redis preference write failed for user %s: %s", user_id, exc)


def build_preference_cache(settings) -> PreferenceCache:
    if settings.cache_backend == "redis":
        client = redis.Redis.from_url(settings.redis_url)
        return RedisPreferenceCache(client, ttl_seconds=settings.preference_cache_ttl_seconds)
    return InMemoryPreferenceCache(ttl_seconds=settings.preference_cache_ttl_seconds)


def load_preferences_from_store(user_id: str) -> NotificationPreferences | None:
    """Read a user's preferences from the database; ``None`` if unknown."""
    with get_session() as session:
        user = session.get(User, user_id)
        if user is None:
            return None
        return NotificationPreferences.from_user(user)


def _require_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("USER_NOT_FOUND", "User not found")
    return user


def get_notification_preferences(user_id: str) -> NotificationPreferences:
    with get_session() as session:
        return NotificationPreferences.from_user(_require_user(session, user_id))


def update_notification_preferences(
    cache: PreferenceCache, user_id: str, updates: dict[str, Any]
) -> NotificationPreferences:
    """Persist preference changes and drop the user's cache entry.

    Unknown keys and non-boolean values are rejected before any write. The
    cache entry is removed both before the write and after the commit.
    """
    cleaned: dict[str, bool] = {}
    for key, value in updates.items():
        if key not in PREFERENCE_COLUMNS:
            raise ValidationError("INVALID_PREFERENCE", f"Unknown preference {key!r}")
        if value is None:
            continue
        if not isinstance(value, bool):
            raise ValidationError("INVALID_PREFERENCE", f"{key} must be true or false")
        cleaned[key] = value

    cache.invalidate(user_id)
    with get_session() as session:
        user = _require_user(session, user_id)
        for key, value in cleaned.items():
            setattr(user, PREFERENCE_COLUMNS[key], value)
        session.add(user)
        session.flush()
        prefs = NotificationPreferences.from_user(user)
    cache.invalidate(user_id)
    logger.info("Updated notification preferences for user %s: %s", user_id, cleaned)
    return prefs
