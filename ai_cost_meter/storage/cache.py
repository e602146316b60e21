"""
Redis cache layer.

Cache-aside helper in front of the metering store. The cache is only a
latency optimization: when Redis is unconfigured or unreachable every
operation behaves like a miss or a no-op, and callers fall through to the
authoritative store.
"""

import json
from datetime import date
from typing import Any, Callable, Dict, Optional, TypeVar

import redis

from ai_cost_meter.logging_config import get_logger

log = get_logger(__name__)

T = TypeVar("T")

# TTL per entry kind (seconds)
QUOTA_CHECK_TTL = 5 * 60
USAGE_SUMMARY_TTL = 5 * 60
COST_ESTIMATES_TTL = 24 * 60 * 60
DEFAULT_TTL = 5 * 60

# Failures that mean "treat as a miss"
_CACHE_ERRORS = (redis.RedisError, OSError)

_SCAN_BATCH = 100

_GLOB_SPECIAL = set("*?[]\\")


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters so ``value`` only matches itself."""
    return "".join("\\" + ch if ch in _GLOB_SPECIAL else ch for ch in value)


def quota_check_key(organization_id: str, provider: str, model: str) -> str:
    return f"quota:{organization_id}:{provider}:{model}"


def usage_summary_key(organization_id: str, start: str, end: str) -> str:
    return f"usage:{organization_id}:{start}:{end}"


def cost_estimate_key(provider: str, model: str, as_of: date) -> str:
    """Rate cache key for one lookup day; a new day never reads an older day's rate."""
    return f"cost:{provider}:{model}:{as_of.isoformat()}"


class CacheLayer:
    """JSON cache over a Redis client with mandatory graceful degradation."""

    def __init__(self, client: Optional[redis.Redis] = None):
        """Initialize the cache.

        Args:
            client: Redis client; ``None`` disables caching entirely
        """
        self._client = client

    @classmethod
    def from_url(cls, redis_url: Optional[str], timeout: float = 0.5) -> "CacheLayer":
        """Build a cache from a Redis URL; an empty URL yields a disabled cache."""
        if not redis_url:
            log.info("cache_disabled")
            return cls(None)
        client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or ``None`` on miss or cache failure."""
        if self._client is None:
            return None
        try:
            raw = self._client.get(key)
        except _CACHE_ERRORS as e:
            log.warning("cache_unavailable", operation="get", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            log.warning("cache_entry_corrupt", key=key)
            return None

    def set(self, key: str, value: Any, ttl: int = DEFAULT_TTL) -> bool:
        """Store a JSON-serializable value with a TTL. Returns whether it was stored."""
        if self._client is None:
            return False
        try:
            self._client.setex(key, ttl, json.dumps(value, default=str))
            return True
        except _CACHE_ERRORS as e:
            log.warning("cache_unavailable", operation="set", key=key, error=str(e))
            return False

    def delete(self, key: str) -> bool:
        if self._client is None:
            return False
        try:
            self._client.delete(key)
            return True
        except _CACHE_ERRORS as e:
            log.warning("cache_unavailable", operation="delete", key=key, error=str(e))
            return False

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern.

        Keys are collected with SCAN and removed with a single DEL.

        Returns:
            Number of keys deleted (0 when the cache is unavailable)
        """
        if self._client is None:
            return 0
        try:
            keys = list(self._client.scan_iter(match=pattern, count=_SCAN_BATCH))
            if not keys:
                return 0
            self._client.delete(*keys)
            return len(keys)
        except _CACHE_ERRORS as e:
            log.warning("cache_unavailable", operation="delete_pattern", pattern=pattern, error=str(e))
            return 0

    def exists(self, key: str) -> bool:
        if self._client is None:
            return False
        try:
            return self._client.exists(key) == 1
        except _CACHE_ERRORS as e:
            log.warning("cache_unavailable", operation="exists", key=key, error=str(e))
            return False

    def ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -1 when unknown or unavailable."""
        if self._client is None:
            return -1
        try:
            return self._client.ttl(key)
        except _CACHE_ERRORS as e:
            log.warning("cache_unavailable", operation="ttl", key=key, error=str(e))
            return -1

    def get_or_set(self, key: str, fetch_fn: Callable[[], T], ttl: int = DEFAULT_TTL) -> T:
        """Cache-aside read.

        Concurrent misses may both call ``fetch_fn``; it must be idempotent.
        Errors raised by ``fetch_fn`` propagate, cache errors never do.
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        value = fetch_fn()
        self.set(key, value, ttl)
        return value

    def invalidate_organization(self, organization_id: str) -> int:
        """Drop quota snapshots and usage summaries cached for an organization."""
        prefix = escape_glob(organization_id)
        deleted = self.delete_pattern(f"quota:{prefix}:*")
        deleted += self.delete_pattern(f"usage:{prefix}:*")
        return deleted

    def stats(self) -> Dict[str, Any]:
        """Connectivity report: enabled, connected and (when connected) key count."""
        if self._client is None:
            return {"enabled": False, "connected": False}
        try:
            self._client.ping()
            return {"enabled": True, "connected": True, "key_count": self._client.dbsize()}
        except _CACHE_ERRORS as e:
            log.warning("cache_unavailable", operation="stats", error=str(e))
            return {"enabled": True, "connected": False}
