"""Tests unitarios para el cache en memoria y el lock de sincronización."""

from unittest.mock import MagicMock, patch

import pytest

from marketsync.core.cache_manager import MemoryCache, RedisCache, create_cache
from marketsync.utils.distributed_lock import KeyedLocks, SyncLock, sync_lock


class TestMemoryCache:
    """Tests para MemoryCache."""

    @pytest.mark.asyncio
    async def test_entries_expire_after_ttl(self, clock):
        """Debe expirar las entradas cuando vence su TTL."""
        cache = MemoryCache(clock=clock)
        await cache.set("key", "value", ttl_seconds=10)

        clock.advance(9)
        assert await cache.get("key") == "value"

        clock.advance(1)
        assert await cache.get("key") is None

    @pytest.mark.asyncio
    async def test_add_only_sets_missing_keys(self, clock):
        """add() debe fallar si la clave ya existe y no expiró."""
        cache = MemoryCache(clock=clock)

        assert await cache.add("lock", "a", ttl_seconds=5) is True
        assert await cache.add("lock", "b", ttl_seconds=5) is False

        clock.advance(5)
        assert await cache.add("lock", "b", ttl_seconds=5) is True

    @pytest.mark.asyncio
    async def test_incr_and_delete_if_equals(self):
        """incr() cuenta desde 1 y delete_if_equals() respeta el valor."""
        cache = MemoryCache()

        assert await cache.incr("counter") == 1
        assert await cache.incr("counter") == 2
        assert await cache.delete_if_equals("counter", 1) is False
        assert await cache.delete_if_equals("counter", 2) is True
        assert await cache.get("counter") is None

    def test_create_cache_without_redis_uses_memory(self, settings):
        """Sin REDIS_URL debe usar el cache en memoria."""
        assert isinstance(create_cache(settings), MemoryCache)

    def test_create_cache_with_redis_url(self, settings):
        """Con REDIS_URL debe usar Redis."""
        settings.REDIS_URL = "redis://localhost:6379/0"

        with patch("marketsync.core.redis_client.get_redis_client", return_value=MagicMock()):
            assert isinstance(create_cache(settings), RedisCache)


class TestSyncLock:
    """Tests para el lock de sincronización no bloqueante."""

    @pytest.mark.asyncio
    async def test_second_acquire_fails_while_held(self):
        """Un segundo holder no debe obtener el lock."""
        cache = MemoryCache()
        first = SyncLock(cache, "sync_lock_shopify")
        second = SyncLock(cache, "sync_lock_shopify")

        assert await first.acquire() is True
        assert await second.acquire() is False
        assert await second.is_locked() is True

        await first.release()
        assert await second.acquire() is True

    @pytest.mark.asyncio
    async def test_release_after_expiry_does_not_free_new_holder(self, clock):
        """Un holder expirado no debe liberar el lock de otro."""
        cache = MemoryCache(clock=clock)
        stale = SyncLock(cache, "sync_lock_lazada", timeout_seconds=10)
        await stale.acquire()

        clock.advance(11)
        fresh = SyncLock(cache, "sync_lock_lazada", timeout_seconds=10)
        assert await fresh.acquire() is True

        await stale.release()
        assert await fresh.is_locked() is True

    @pytest.mark.asyncio
    async def test_context_manager_releases_on_error(self):
        """sync_lock debe liberar el lock aunque el bloque falle."""
        cache = MemoryCache()

        with pytest.raises(RuntimeError):
            async with sync_lock(cache, "sync_lock_tiktok") as acquired:
                assert acquired is True
                raise RuntimeError("boom")

        assert await cache.get("sync_lock_tiktok") is None

    def test_keyed_locks_are_per_key(self):
        """Debe devolver el mismo lock para la misma clave y distintos para otras."""
        locks = KeyedLocks()

        assert locks("shopee") is locks("shopee")
        assert locks("shopee") is not locks("lazada")
        assert len(locks) == 2
