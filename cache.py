"""Cache port used by the ledger, the workflows and the read queries.

Two implementations share the get/set/delete/ping surface:
- RedisCache: production, values stored as JSON with SETEX expirations.
- MemoryCache: single-process fallback used when REDIS_URL is not configured
  (and in tests). Same expiry semantics, kept in a dict.

Writers are responsible for deleting the keys they make stale; TTL only bounds
how long a key nobody invalidated can stay stale.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable

import redis


logger = logging.getLogger(__name__)


# ---- key helpers ----
ACTIVE_ACTIVITIES_KEY = "activities:active"
ADMIN_USERS_KEY = "admin:users"
ADMIN_DASHBOARD_STATS_KEY = "admin:dashboardStats"
ADMIN_ANALYTICS_KEY = "admin:analytics"

ADMIN_AGGREGATE_KEYS = (ADMIN_USERS_KEY, ADMIN_DASHBOARD_STATS_KEY, ADMIN_ANALYTICS_KEY)


def user_stats_key(user_id: int) -> str:
    return f"user:{user_id}:stats"


def recent_activities_key(user_id: int) -> str:
    return f"user:{user_id}:recentActivities"


def user_activities_key(user_id: int) -> str:
    return f"user:activities:{user_id}"


def payout_stats_key(user_id: int) -> str:
    return f"user:{user_id}:payoutStats"


def payout_history_key(user_id: int) -> str:
    return f"user:{user_id}:payoutHistory"


def verification_step_key(external_id: str) -> str:
    return f"user:verificationStep:{external_id}"


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


class RedisCache:
    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Any:
        raw = self.client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            self.client.delete(key)
            return None

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        if ttl_seconds:
            self.client.setex(key, int(ttl_seconds), _dumps(value))
        else:
            self.client.set(key, _dumps(value))

    def delete(self, *keys: str) -> None:
        if keys:
            self.client.delete(*keys)

    def ping(self) -> bool:
        return bool(self.client.ping())


class MemoryCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            raw, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._data[key]
                return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (_dumps(value), expires_at)

    def delete(self, *keys: str) -> None:
        with self._lock:
            for k in keys:
                self._data.pop(k, None)

    def ping(self) -> bool:
        return True

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


def build_cache(redis_url: str | None):
    if redis_url:
        logger.info("Using redis cache")
        return RedisCache.from_url(redis_url)
    logger.info("REDIS_URL not set; using in-process cache")
    return MemoryCache()


def cache_aside(cache, key: str, ttl_seconds: int, loader: Callable[[], Any]) -> Any:
    """Return the cached value for `key`, computing and storing it on a miss.

    Cache outages degrade to reading the source of truth.
    """
    try:
        hit = cache.get(key)
    except redis.RedisError:
        logger.exception("Cache read failed for %s", key)
        hit = None
    if hit is not None:
        logger.debug("Cache hit %s", key)
        return hit

    value = loader()
    prime(cache, key, value, ttl_seconds)
    return value


def prime(cache, key: str, value: Any, ttl_seconds: int | None) -> None:
    """Write a known-fresh value after commit. Failures are logged, not raised."""
    try:
        cache.set(key, value, ttl_seconds)
    except redis.RedisError:
        logger.exception("Cache write failed for %s", key)


def invalidate(cache, *keys: str) -> None:
    """Delete stale keys after a write. Failures are logged, not raised."""
    if not keys:
        return
    try:
        cache.delete(*keys)
        logger.debug("Invalidated %s", ", ".join(keys))
    except redis.RedisError:
        logger.exception("Cache invalidation failed for %s", ", ".join(keys))
