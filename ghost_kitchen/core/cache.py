"""
Key/value cache for live session state and derived aggregates.

Redis is used when REDIS_URL is configured; otherwise (or when Redis is
unreachable) everything falls back to the in-process SimpleCache. Values
are JSON-serialisable dicts/lists. A TTL of None means the entry lives
until it is deleted explicitly.
"""
import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Optional

logger = logging.getLogger(__name__)


class SimpleCache:
    """In-memory cache with optional TTL and size limit."""

    MAX_ENTRIES = 10000  # Prevent unbounded memory growth

    def __init__(self):
        self._cache: dict = {}
        self._expiry: dict = {}
        self._lock = threading.Lock()

    def _is_live(self, key: str, now: datetime) -> bool:
        expires_at = self._expiry.get(key)
        return expires_at is None or now < expires_at

    def _evict_expired(self):
        """Remove expired entries to reclaim memory."""
        now = datetime.now()
        expired = [k for k, exp in self._expiry.items() if exp is not None and exp <= now]
        for k in expired:
            self._cache.pop(k, None)
            self._expiry.pop(k, None)

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired."""
        with self._lock:
            if key not in self._cache:
                return None
            if self._is_live(key, datetime.now()):
                # Hand out a copy so callers can't mutate cached state in place
                return json.loads(self._cache[key])
            del self._cache[key]
            del self._expiry[key]
            return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = 300):
        """Set value in cache; ttl_seconds=None stores without expiry."""
        with self._lock:
            if len(self._cache) >= self.MAX_ENTRIES:
                self._evict_expired()
            # Still full: drop the entries closest to expiry
            if len(self._cache) >= self.MAX_ENTRIES:
                expiring = [k for k, exp in self._expiry.items() if exp is not None]
                for k in sorted(expiring, key=self._expiry.get)[:100]:
                    self._cache.pop(k, None)
                    self._expiry.pop(k, None)
            self._cache[key] = json.dumps(value, default=str)
            self._expiry[key] = (
                datetime.now() + timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None
            )

    def delete(self, key: str):
        """Delete key from cache."""
        with self._lock:
            self._cache.pop(key, None)
            self._expiry.pop(key, None)

    def clear_prefix(self, prefix: str):
        """Clear all keys with given prefix."""
        with self._lock:
            for key in [k for k in self._cache if k.startswith(prefix)]:
                self._cache.pop(key, None)
                self._expiry.pop(key, None)

    def clear(self):
        with self._lock:
            self._cache.clear()
            self._expiry.clear()

    def stats(self) -> dict:
        """Get cache statistics."""
        now = datetime.now()
        valid = sum(1 for k in self._cache if self._is_live(k, now))
        return {
            "total_keys": len(self._cache),
            "valid_keys": valid,
            "expired_keys": len(self._cache) - valid,
        }


class RedisCacheClient:
    """Redis-backed cache with in-memory fallback."""

    def __init__(self, fallback: Optional[SimpleCache] = None):
        self._redis = None
        self._fallback = fallback or SimpleCache()

    @property
    def connected(self) -> bool:
        return self._redis is not None

    def initialize(self, redis_url: Optional[str] = None):
        if redis_url:
            try:
                import redis
                self._redis = redis.from_url(
                    redis_url, socket_connect_timeout=2, decode_responses=True,
                )
                self._redis.ping()
                logger.info("Redis cache connected")
            except Exception as e:
                logger.warning(f"Redis unavailable, using memory cache: {e}")
                self._redis = None

    def get(self, key: str) -> Optional[Any]:
        if self._redis:
            try:
                val = self._redis.get(key)
                return json.loads(val) if val else None
            except Exception as e:
                logger.warning(f"Redis get failed for {key}, using memory cache: {e}")
        return self._fallback.get(key)

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = 300):
        serialized = json.dumps(value, default=str)
        if self._redis:
            try:
                if ttl_seconds is None:
                    self._redis.set(key, serialized)
                else:
                    self._redis.setex(key, ttl_seconds, serialized)
                return
            except Exception as e:
                logger.warning(f"Redis set failed for {key}, using memory cache: {e}")
        self._fallback.set(key, value, ttl_seconds)

    def delete(self, key: str):
        if self._redis:
            try:
                self._redis.delete(key)
            except Exception as e:
                logger.warning(f"Redis delete failed for {key}: {e}")
        # Always clear the fallback too, it may hold a copy written during an outage
        self._fallback.delete(key)

    def invalidate_pattern(self, pattern: str):
        if self._redis:
            try:
                cursor = 0
                while True:
                    cursor, keys = self._redis.scan(cursor, match=pattern, count=100)
                    if keys:
                        self._redis.delete(*keys)
                    if cursor == 0:
                        break
            except Exception as e:
                logger.warning(f"Redis invalidate failed for {pattern}: {e}")
        self._fallback.clear_prefix(pattern.replace("*", ""))


redis_cache = RedisCacheClient()


class CacheKeys:
    GHOST_SESSION = "ghost"
    FORECAST_PATTERNS = "forecast:patterns"
    WEATHER_FORECAST = "weather:forecast"

    @staticmethod
    def ghost_session(restaurant_id: int) -> str:
        return f"{CacheKeys.GHOST_SESSION}:{restaurant_id}"

    @staticmethod
    def forecast_patterns(restaurant_id: int) -> str:
        return f"{CacheKeys.FORECAST_PATTERNS}:{restaurant_id}"

    @staticmethod
    def weather_forecast(lat: float, lng: float, days: int) -> str:
        return f"{CacheKeys.WEATHER_FORECAST}:{lat:.2f}:{lng:.2f}:{days}"
