import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

from margin_engine.core.cache import Cache, get_cache_client, get_cache_key_for_alert
from margin_engine.core.config import settings
from margin_engine.core.logging import get_logger

logger = get_logger(__name__)


class BaseAlertThrottle(ABC):
    """Allows at most one alert per key within a cooldown window"""

    @abstractmethod
    def acquire(self, key: str, cooldown_seconds: float) -> bool:
        """Return True if an alert for `key` may be emitted now (and start its cooldown)"""
        pass

    @abstractmethod
    def release(self, key: str) -> None:
        """Forget the cooldown for `key`, e.g. after the alert could not be written"""
        pass


class InMemoryAlertThrottle(BaseAlertThrottle):
    """Process-local cooldowns; expired keys are dropped on the next acquire"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at: Dict[str, float] = {}
        self._lock = threading.Lock()

    def active_count(self) -> int:
        """Number of keys currently tracked, expired or not"""
        with self._lock:
            return len(self._expires_at)

    def acquire(self, key: str, cooldown_seconds: float) -> bool:
        now = self._clock()
        with self._lock:
            self._expires_at = {k: t for k, t in self._expires_at.items() if t > now}
            if key in self._expires_at:
                return False
            self._expires_at[key] = now + cooldown_seconds
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._expires_at.pop(key, None)


class RedisAlertThrottle(BaseAlertThrottle):
    """Cooldowns shared by every process that talks to the same Redis"""

    def __init__(self, cache: Cache, fallback: Optional[BaseAlertThrottle] = None):
        self.cache = cache
        self.fallback = fallback or InMemoryAlertThrottle()

    def acquire(self, key: str, cooldown_seconds: float) -> bool:
        acquired = self.cache.set_if_absent(get_cache_key_for_alert(key), 1, ttl_seconds=cooldown_seconds)
        if acquired is None:
            logger.warning("Redis unavailable for alert throttling, using process-local cooldowns", key=key)
            return self.fallback.acquire(key, cooldown_seconds)
        return acquired

    def release(self, key: str) -> None:
        self.cache.delete(get_cache_key_for_alert(key))
        self.fallback.release(key)


def build_alert_throttle() -> BaseAlertThrottle:
    """Throttle for the configured ALERT_THROTTLE_BACKEND"""
    if settings.ALERT_THROTTLE_BACKEND == "redis":
        return RedisAlertThrottle(get_cache_client())
    return InMemoryAlertThrottle()
