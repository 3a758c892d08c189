"""
Locking utilities for sync orchestration and per-key shared state.

- KeyedLocks: in-process asyncio locks, one per key (service, platform),
  so updates to one platform's counters never wait on another's.
- SyncLock: advisory lock stored in the shared cache with a TTL. Acquisition
  never blocks; if the lock is held the caller returns immediately. The TTL
  is the safety net against a wedged holder.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Dict, Optional

from marketsync.core.cache_manager import CacheBackend

logger = logging.getLogger(__name__)


class KeyedLocks:
    """Registry of asyncio locks keyed by name."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __call__(self, key: str) -> asyncio.Lock:
        return self.get(key)

    def __len__(self) -> int:
        return len(self._locks)


class SyncLock:
    """
    Non-blocking advisory lock backed by the shared cache.

    Each holder writes a unique token so a release after TTL expiry can
    never free a lock that another holder has since acquired.
    """

    def __init__(self, cache: CacheBackend, lock_key: str, timeout_seconds: int = 1800):
        """
        Initialize the lock.

        Args:
            cache: Shared cache backend
            lock_key: Unique key for the lock (e.g. sync_lock_shopify)
            timeout_seconds: Lock TTL in seconds
        """
        self.cache = cache
        self.lock_key = lock_key
        self.timeout_seconds = timeout_seconds
        self.token = uuid.uuid4().hex
        self.acquired = False
        self.start_time: Optional[float] = None

    async def acquire(self) -> bool:
        """
        Try to acquire the lock without waiting.

        Returns:
            bool: True if lock was acquired, False if already held
        """
        acquired = await self.cache.add(self.lock_key, self.token, self.timeout_seconds)
        if acquired:
            self.acquired = True
            self.start_time = time.monotonic()
            logger.debug(f"🔒 Acquired lock '{self.lock_key}'")
        else:
            logger.debug(f"Lock '{self.lock_key}' already held")
        return acquired

    async def release(self) -> None:
        """Release the lock if this instance still holds it."""
        if not self.acquired:
            return
        released = await self.cache.delete_if_equals(self.lock_key, self.token)
        self.acquired = False
        duration = time.monotonic() - (self.start_time or time.monotonic())
        if released:
            logger.debug(f"🔓 Released lock '{self.lock_key}' (held for {duration:.2f}s)")
        else:
            logger.warning(f"Lock '{self.lock_key}' expired before release (held for {duration:.2f}s)")

    async def is_locked(self) -> bool:
        """Check whether anyone currently holds the lock."""
        return await self.cache.get(self.lock_key) is not None


@asynccontextmanager
async def sync_lock(cache: CacheBackend, lock_key: str, timeout_seconds: int = 1800):
    """
    Context manager yielding whether the lock was acquired.

    Usage:
        async with sync_lock(cache, "sync_lock_shopify") as acquired:
            if not acquired:
                return {"status": "already_in_progress"}
    """
    lock = SyncLock(cache, lock_key, timeout_seconds)
    try:
        yield await lock.acquire()
    finally:
        await lock.release()
