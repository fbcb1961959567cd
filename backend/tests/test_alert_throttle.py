from margin_engine.core.cache import Cache
from margin_engine.services.alert_throttle import InMemoryAlertThrottle, RedisAlertThrottle

from tests.helpers import FakeClock


class FakeCache:
    def __init__(self, available=True):
        self.available = available
        self.keys = set()

    def set_if_absent(self, key, value, ttl_seconds=60):
        if not self.available:
            return None
        if key in self.keys:
            return False
        self.keys.add(key)
        return True

    def delete(self, key):
        self.keys.discard(key)


def test_in_memory_cooldown():
    clock = FakeClock()
    throttle = InMemoryAlertThrottle(clock=clock.seconds)

    assert throttle.acquire("warn:1", 60) is True
    assert throttle.acquire("warn:1", 60) is False
    assert throttle.acquire("warn:2", 60) is True

    clock.advance(60)
    assert throttle.acquire("warn:1", 60) is True


def test_in_memory_release():
    throttle = InMemoryAlertThrottle()

    assert throttle.acquire("warn:1", 60) is True
    throttle.release("warn:1")
    assert throttle.acquire("warn:1", 60) is True


def test_redis_throttle_uses_set_if_absent():
    cache = FakeCache()
    throttle = RedisAlertThrottle(cache)

    assert throttle.acquire("warn:1", 60) is True
    assert throttle.acquire("warn:1", 60) is False
    assert "margin-risk:alert:warn:1" in cache.keys

    throttle.release("warn:1")
    assert throttle.acquire("warn:1", 60) is True


def test_redis_throttle_falls_back_when_unavailable():
    throttle = RedisAlertThrottle(FakeCache(available=False))

    assert throttle.acquire("warn:1", 60) is True
    assert throttle.acquire("warn:1", 60) is False


def test_in_memory_throttle_forgets_expired_keys():
    clock = FakeClock()
    throttle = InMemoryAlertThrottle(clock=clock.seconds)

    for position in range(100):
        throttle.acquire(f"warn:{position}", 60)
    assert throttle.active_count() == 100

    clock.advance(61)
    assert throttle.acquire("warn:new", 60) is True
    assert throttle.active_count() == 1


class FakeRedis:
    def __init__(self):
        self.store = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = (value, ex)
        return True

    def delete(self, key):
        self.store.pop(key, None)


def make_cache(client):
    cache = Cache.__new__(Cache)
    cache.redis = client
    return cache


def test_cache_set_if_absent_uses_nx_with_expiry():
    client = FakeRedis()
    cache = make_cache(client)

    assert cache.set_if_absent("k", 1, ttl_seconds=300) is True
    assert cache.set_if_absent("k", 1, ttl_seconds=300) is False
    assert client.store["k"] == ("1", 300)

    cache.delete("k")
    assert cache.set_if_absent("k", 1, ttl_seconds=0.5) is True
    assert client.store["k"] == ("1", 1)


def test_cache_without_redis_reports_unavailable():
    cache = make_cache(None)

    assert cache.set_if_absent("k", 1) is None
    cache.delete("k")
