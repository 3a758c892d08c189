"""
Cache management system for short-lived shared state.

This module provides a unified async interface for TTL-bound keys,
backed by Redis when configured and by an in-memory store otherwise.
Circuit breaker state, sync locks, rate-limit counters and credential
backups all live here.

Every operation is atomic per key: Redis commands are atomic on the
server, and the memory backend never awaits between a read and its write.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis

from marketsync.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class CacheBackend:
    """Contract shared by the memory and Redis caches."""

    backend_name = "base"

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    async def add(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Set the key only when absent. Returns True if it was stored."""
        raise NotImplementedError

    async def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        """Atomically increment an integer key, refreshing its TTL."""
        raise NotImplementedError

    async def delete(self, *keys: str) -> int:
        raise NotImplementedError

    async def delete_if_equals(self, key: str, value: Any) -> bool:
        """Delete the key only when it still holds the given value."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryCache(CacheBackend):
    """
    In-process cache with per-entry expiration.

    Args:
        clock: Time source in epoch seconds, injectable for tests
    """

    backend_name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Dict[str, Any]] = {}

    def _expires_at(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds else None

    def _live_entry(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry["expires_at"] is not None and self._clock() >= entry["expires_at"]:
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[Any]:
        entry = self._live_entry(key)
        return entry["data"] if entry else None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        self._data[key] = {"data": value, "expires_at": self._expires_at(ttl_seconds)}
        self._cleanup_expired()

    async def add(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        if self._live_entry(key) is not None:
            return False
        self._data[key] = {"data": value, "expires_at": self._expires_at(ttl_seconds)}
        return True

    async def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        entry = self._live_entry(key)
        value = int(entry["data"]) + 1 if entry else 1
        self._data[key] = {"data": value, "expires_at": self._expires_at(ttl_seconds)}
        return value

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed

    async def delete_if_equals(self, key: str, value: Any) -> bool:
        entry = self._live_entry(key)
        if entry is None or entry["data"] != value:
            return False
        del self._data[key]
        return True

    def _cleanup_expired(self) -> None:
        now = self._clock()
        expired_keys = [k for k, e in self._data.items() if e["expires_at"] is not None and now >= e["expires_at"]]
        for key in expired_keys:
            del self._data[key]
        if expired_keys:
            logger.debug(f"Cleaned up {len(expired_keys)} expired cache entries")


class RedisCache(CacheBackend):
    """Redis-backed cache. Values are stored as JSON."""

    backend_name = "redis"

    # Deletes the key only if it still holds our token (safe lock release)
    _DELETE_IF_EQUALS_SCRIPT = """
    if redis.call('get', KEYS[1]) == ARGV[1] then
        return redis.call('del', KEYS[1])
    end
    return 0
    """

    def __init__(self, client: redis.Redis, prefix: str = "marketsync:"):
        self._client = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        await self._client.set(self._key(key), json.dumps(value, default=str), ex=ttl_seconds or None)

    async def add(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        stored = await self._client.set(
            self._key(key), json.dumps(value, default=str), ex=ttl_seconds or None, nx=True
        )
        return bool(stored)

    async def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(self._key(key))
            if ttl_seconds:
                pipe.expire(self._key(key), ttl_seconds)
            results = await pipe.execute()
        return int(results[0])

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*(self._key(k) for k in keys)))

    async def delete_if_equals(self, key: str, value: Any) -> bool:
        result = await self._client.eval(
            self._DELETE_IF_EQUALS_SCRIPT, 1, self._key(key), json.dumps(value, default=str)
        )
        return bool(result)

    async def close(self) -> None:
        await self._client.aclose()


def create_cache(settings: Optional[Settings] = None) -> CacheBackend:
    """
    Build the cache backend for the current configuration.

    Args:
        settings: Settings to use (defaults to get_settings())

    Returns:
        CacheBackend: RedisCache when REDIS_URL is set, MemoryCache otherwise
    """
    settings = settings or get_settings()

    if settings.REDIS_URL:
        from marketsync.core.redis_client import get_redis_client

        logger.info("Using Redis for shared cache state")
        return RedisCache(get_redis_client(settings))

    logger.info("Redis not configured, using memory cache")
    return MemoryCache()
