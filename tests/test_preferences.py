from __future__ import annotations

import threading

import pytest
import redis

from congregate.errors import NotFoundError, ValidationError
from congregate.preferences import (
    InMemoryPreferenceCache,
    NotificationPreferences,
    RedisPreferenceCache,
    get_notification_preferences,
    load_preferences_from_store,
    update_notification_preferences,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeRedis:
    def __init__(self):
        self.store: dict[str, tuple[int | None, str]] = {}
        self.versions: dict[str, int] = {}

    def _touch(self, key):
        self.versions[key] = self.versions.get(key, 0) + 1

    def setex(self, key, ttl, value):
        self.store[key] = (ttl, value)
        self._touch(key)

    def get(self, key):
        entry = self.store.get(key)
        return entry[1].encode("utf-8") if entry else None

    def incr(self, key):
        ttl, value = self.store.get(key, (None, "0"))
        self.store[key] = (ttl, str(int(value) + 1))
        self._touch(key)
        return int(value) + 1

    def expire(self, key, ttl):
        if key in self.store:
            self.store[key] = (ttl, self.store[key][1])

    def delete(self, *keys):
        for key in keys:
            if self.store.pop(key, None) is not None:
                self._touch(key)

    def scan_iter(self, match=None):
        prefix = (match or "").rstrip("*")
        return [key for key in list(self.store) if key.startswith(prefix)]

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    """Buffers commands until ``execute`` unless ``watch`` switched it to immediate mode."""

    def __init__(self, client):
        self.client = client
        self.buffered = True
        self.queued = []
        self.watched: dict[str, int] = {}

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.queued.clear()
        self.watched.clear()

    def watch(self, *keys):
        self.buffered = False
        for key in keys:
            self.watched[key] = self.client.versions.get(key, 0)

    def multi(self):
        self.buffered = True

    def _command(self, name, *args):
        if not self.buffered:
            return getattr(self.client, name)(*args)
        self.queued.append((name, args))
        return self

    def get(self, key):
        return self._command("get", key)

    def setex(self, key, ttl, value):
        return self._command("setex", key, ttl, value)

    def incr(self, key):
        return self._command("incr", key)

    def expire(self, key, ttl):
        return self._command("expire", key, ttl)

    def delete(self, *keys):
        return self._command("delete", *keys)

    def execute(self):
        for key, version in self.watched.items():
            if self.client.versions.get(key, 0) != version:
                raise redis.WatchError("watched key changed")
        results = [getattr(self.client, name)(*args) for name, args in self.queued]
        self.queued.clear()
        self.watched.clear()
        return results


def test_unset_preferences_default_to_enabled(make_user):
    user = make_user("anna")

    prefs = get_notification_preferences(user.id)

    assert prefs == NotificationPreferences(dms=True, communities=True, forums=True, feed=True)


def test_event_category_follows_community_switch():
    prefs = NotificationPreferences(communities=False)

    assert prefs.allows("event") is False
    assert prefs.allows("community") is False
    assert prefs.allows("dm") is True


def test_cache_entries_expire_after_ttl():
    clock = FakeClock()
    cache = InMemoryPreferenceCache(ttl_seconds=300, clock=clock)
    cache.set("u1", NotificationPreferences(feed=False))

    clock.now += 299
    assert cache.get("u1") == NotificationPreferences(feed=False)
    clock.now += 1
    assert cache.get("u1") is None
    assert len(cache) == 0


def test_load_reads_through_once():
    cache = InMemoryPreferenceCache()
    calls = []

    def loader(user_id):
        calls.append(user_id)
        return NotificationPreferences(dms=False)

    assert cache.load("u1", loader) == NotificationPreferences(dms=False)
    assert cache.load("u1", loader) == NotificationPreferences(dms=False)
    assert calls == ["u1"]


def test_invalidation_during_load_keeps_stale_value_out():
    cache = InMemoryPreferenceCache()

    def racing_loader(user_id):
        # A preference update lands while the old row is being read.
        cache.invalidate(user_id)
        return NotificationPreferences(feed=True)

    assert cache.load("u1", racing_loader) == NotificationPreferences(feed=True)
    assert cache.get("u1") is None


def test_unknown_user_is_not_cached():
    cache = InMemoryPreferenceCache()

    assert cache.load("missing", lambda _: None) is None
    assert len(cache) == 0


def test_update_invalidates_so_next_read_is_fresh(make_user):
    user = make_user("joanna")
    cache = InMemoryPreferenceCache()
    assert cache.load(user.id, load_preferences_from_store).forums is True

    updated = update_notification_preferences(cache, user.id, {"forums": False})

    assert updated.forums is False
    assert cache.get(user.id) is None
    assert cache.load(user.id, load_preferences_from_store).forums is False


def test_update_rejects_bad_input_before_writing(make_user):
    user = make_user("susanna")
    cache = InMemoryPreferenceCache()

    with pytest.raises(ValidationError):
        update_notification_preferences(cache, user.id, {"carrier_pigeon": True})
    with pytest.raises(ValidationError):
        update_notification_preferences(cache, user.id, {"feed": "sometimes"})
    assert get_notification_preferences(user.id).feed is True


def test_update_for_missing_user_is_not_found():
    with pytest.raises(NotFoundError):
        update_notification_preferences(InMemoryPreferenceCache(), "nobody", {"feed": False})


def test_concurrent_loads_for_many_users_are_safe():
    cache = InMemoryPreferenceCache()
    errors = []

    def worker(index):
        try:
            for round_ in range(200):
                user_id = f"user-{(index + round_) % 5}"
                cache.load(user_id, lambda _: NotificationPreferences())
                if round_ % 7 == 0:
                    cache.invalidate(user_id)
        except Exception as exc:  # pragma: no cover - surfaced via assertion
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(cache) <= 5


def test_redis_cache_round_trip_and_invalidate():
    client = FakeRedis()
    cache = RedisPreferenceCache(client, ttl_seconds=300)

    cache.set("u1", NotificationPreferences(dms=False))

    assert client.store["prefs:user:u1"][0] == 300
    assert cache.get("u1") == NotificationPreferences(dms=False)
    cache.invalidate("u1")
    assert cache.get("u1") is None


def test_redis_cache_clear_only_touches_prefix():
    client = FakeRedis()
    client.setex("other:key", 10, "{}")
    cache = RedisPreferenceCache(client)
    cache.set("u1", NotificationPreferences())
    cache.set("u2", NotificationPreferences())

    cache.clear()

    assert list(client.store) == ["other:key"]


def test_redis_invalidate_bumps_generation():
    client = FakeRedis()
    cache = RedisPreferenceCache(client, ttl_seconds=300)
    cache.set("u1", NotificationPreferences())

    cache.invalidate("u1")
    cache.invalidate("u1")

    assert "prefs:user:u1" not in client.store
    assert client.store["prefs:gen:u1"] == (3000, "2")


def test_redis_load_reads_through_once():
    client = FakeRedis()
    cache = RedisPreferenceCache(client)
    calls = []

    def loader(user_id):
        calls.append(user_id)
        return NotificationPreferences(forums=False)

    assert cache.load("u1", loader) == NotificationPreferences(forums=False)
    assert cache.load("u1", loader) == NotificationPreferences(forums=False)
    assert calls == ["u1"]


def test_redis_update_during_load_keeps_stale_value_out(make_user):
    user = make_user("lydia")
    cache = RedisPreferenceCache(FakeRedis())

    def racing_loader(user_id):
        prefs = load_preferences_from_store(user_id)
        update_notification_preferences(cache, user_id, {"feed": False})
        return prefs

    assert cache.load(user.id, racing_loader).feed is True
    assert cache.get(user.id) is None
    assert cache.load(user.id, load_preferences_from_store).feed is False


def test_redis_write_racing_the_watch_is_dropped():
    client = FakeRedis()
    cache = RedisPreferenceCache(client)
    real_pipeline = client.pipeline

    def pipeline_with_concurrent_invalidate():
        pipe = real_pipeline()
        original_multi = pipe.multi

        def multi():
            client.incr("prefs:gen:u1")
            original_multi()

        pipe.multi = multi
        return pipe

    client.pipeline = pipeline_with_concurrent_invalidate

    assert cache.load("u1", lambda _: NotificationPreferences()) == NotificationPreferences()
    assert "prefs:user:u1" not in client.store
