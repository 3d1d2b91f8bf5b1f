"""
cache/store.py -- Redis-backed look-aside cache for resolved sessions.

The cache is an accelerator, never a source of truth. Every method degrades
instead of raising: when Redis is disabled, unreachable, or errors out, reads
return None and writes return False, and the caller falls back to the store.
Failures are logged at warning level so an outage is visible without
breaking authentication.

Values are opaque bytes to this layer; auth/resolver.py owns the key format
and the payload encoding.

Usage:
    cache = SessionCache.from_url("redis://localhost:6379/0")
    cache.set("keygate:abc", b'{"uid": 2, ...}', ttl=600)
    data = cache.get("keygate:abc")      # bytes or None
    cache.delete("keygate:abc")
    cache.close()
"""

from __future__ import annotations

import logging

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger("keygate.cache")


class SessionCache:
    """Key/value cache with per-key expiry and graceful fallback."""

    def __init__(self, client: Redis | None, enabled: bool = True) -> None:
        self._client = client if enabled else None
        if self._client is None:
            logger.info("Session cache disabled")

    @classmethod
    def from_url(cls, url: str, enabled: bool = True) -> SessionCache:
        """Build a cache from a redis:// URL. An empty URL disables caching."""
        if not url or not enabled:
            return cls(None, enabled=False)
        return cls(Redis.from_url(url))

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def ping(self) -> bool:
        """Check Redis connectivity."""
        if not self._client:
            return False
        try:
            return bool(self._client.ping())
        except RedisError as e:
            logger.warning("Redis PING failed: %s", e)
            return False

    def get(self, key: str) -> bytes | None:
        """Get value, returns None on a miss or if Redis is unavailable."""
        if not self._client:
            return None
        try:
            return self._client.get(key)
        except RedisError as e:
            logger.warning("Redis GET failed: %s", e)
            return None

    def set(self, key: str, value: str | bytes, ttl: int | None = None) -> bool:
        """Set value, with expiry in seconds when ttl is given."""
        if not self._client:
            return False
        try:
            self._client.set(key, value, ex=ttl)
            return True
        except RedisError as e:
            logger.warning("Redis SET failed: %s", e)
            return False

    def expire(self, key: str, seconds: int) -> bool:
        """Reset the time-to-live of an existing key."""
        if not self._client:
            return False
        try:
            return bool(self._client.expire(key, seconds))
        except RedisError as e:
            logger.warning("Redis EXPIRE failed: %s", e)
            return False

    def delete(self, *keys: str) -> bool:
        """Delete key(s), returns False if Redis unavailable."""
        if not self._client or not keys:
            return False
        try:
            self._client.delete(*keys)
            return True
        except RedisError as e:
            logger.warning("Redis DELETE failed: %s", e)
            return False

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
            logger.info("Redis connection closed")
