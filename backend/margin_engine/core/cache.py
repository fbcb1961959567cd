import time
from typing import Any, Callable, Dict, Optional
import redis
import json
from .config import settings
from .logging import get_logger

logger = get_logger(__name__)


class SimpleCache:
    """
    A simple in-memory cache with time-to-live (TTL) support.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._cache: Dict[str, Any] = {}
        self._ttl: Dict[str, float] = {}
        self._clock = clock

    def set(self, key: str, value: Any, ttl_seconds: float = 60):
        """
        Set a value in the cache with a specific TTL.
        """
        self._cache[key] = value
        self._ttl[key] = self._clock() + ttl_seconds

    def get(self, key: str) -> Optional[Any]:
        """
        Get a value from the cache. Returns None if the key is not found or has expired.
        """
        if key in self._cache:
            if self._clock() < self._ttl[key]:
                return self._cache[key]
            else:
                # Clean up expired key
                del self._cache[key]
                del self._ttl[key]
        return None

    def update_prices(self, prices: Dict[str, Any], ttl_seconds: float = 300):
        """
        A convenience method to update multiple price tickers in the cache.
        """
        for symbol, price_data in prices.items():
            # The key for a ticker will be `ticker_{symbol}`
            self.set(f"ticker_{symbol.upper()}", price_data, ttl_seconds)

    def get_price(self, symbol: str) -> Optional[Any]:
        return self.get(f"ticker_{symbol.upper()}")


class Cache:
    def __init__(self, redis_url: str):
        try:
            self.redis = redis.from_url(redis_url, decode_responses=True)
            self.redis.ping()
            logger.info(f"Successfully connected to Redis cache at {redis_url}.")
        except redis.exceptions.ConnectionError as e:
            logger.error(f"Could not connect to Redis at {redis_url}: {e}", exc_info=True)
            self.redis = None

    def set_if_absent(self, key: str, value: Any, ttl_seconds: int = 60) -> Optional[bool]:
        """
        Atomically set key only if it does not exist yet.
        Returns None when Redis is unavailable so callers can decide how to degrade.
        """
        if not self.redis:
            return None
        try:
            return bool(self.redis.set(key, json.dumps(value), nx=True, ex=max(1, int(ttl_seconds))))
        except redis.exceptions.RedisError as e:
            logger.error(f"Error setting value in Redis cache for key '{key}': {e}", exc_info=True)
            return None

    def delete(self, key: str):
        if not self.redis:
            return
        try:
            self.redis.delete(key)
        except Exception as e:
            logger.error(f"Error deleting key from Redis cache: {e}", exc_info=True)


_cache_client: Optional[Cache] = None


def get_cache_client() -> Cache:
    """Lazily connect to the Redis instance from settings"""
    global _cache_client
    if _cache_client is None:
        _cache_client = Cache(settings.REDIS_URL)
    return _cache_client


def get_cache_key_for_alert(alert_key: str) -> str:
    """Generates a consistent cache key for an alert cooldown."""
    return f"margin-risk:alert:{alert_key}"
