"""Tests unitarios para SyncManager."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from marketsync.core.cache_manager import MemoryCache
from marketsync.db import InMemoryOrderRepository, InMemoryPlatformConfigRepository
from marketsync.domain.models import PlatformConfig, PlatformSyncStatus, PlatformType, SyncStatus
from marketsync.services.deduplication_engine import DeduplicationEngine
from marketsync.services.order_aggregator import OrderAggregator
from marketsync.services.order_normalizer import OrderNormalizer
from marketsync.services.sync_manager import SyncManager, lock_key
from marketsync.utils.distributed_lock import SyncLock
from marketsync.utils.error_handler import PlatformAPIException, ValidationException

NOW = datetime(2024, 5, 2, 12, 0, tzinfo=UTC)


def shopee_raw(order_sn="B1", minutes_ago=30):
    return {
        "order_sn": order_sn,
        "buyer_email": "x@y.com",
        "recipient_address": {"name": "Ana Tan"},
        "total_amount": 5000000,
        "currency": "USD",
        "order_status": "READY_TO_SHIP",
        "create_time": int((NOW - timedelta(minutes=minutes_ago)).timestamp()),
    }


def fake_connector(orders=None, error=None):
    connector = MagicMock()
    connector.authenticate = AsyncMock(return_value=True)
    connector.fetch_orders = AsyncMock(return_value=orders or [], side_effect=error)
    return connector


class Harness:
    """SyncManager con repositorios en memoria y conectores falsos."""

    def __init__(self, settings, configs, connectors):
        self.config_repository = InMemoryPlatformConfigRepository(configs)
        self.order_repository = InMemoryOrderRepository()
        self.cache = MemoryCache()
        self.connectors = connectors
        factory = MagicMock()
        factory.create = AsyncMock(side_effect=lambda platform: self.connectors[platform])
        aggregator = OrderAggregator(factory, OrderNormalizer(), self.config_repository, self.order_repository)
        self.manager = SyncManager(
            self.config_repository,
            self.order_repository,
            aggregator,
            DeduplicationEngine(settings=settings),
            self.cache,
            settings=settings,
            clock=lambda: NOW,
        )


@pytest.fixture
def harness(settings):
    return Harness(
        settings,
        [
            PlatformConfig(platform_type=PlatformType.SHOPEE, encrypted_credentials="x"),
            PlatformConfig(
                platform_type=PlatformType.SHOPIFY,
                encrypted_credentials="x",
                last_sync=NOW - timedelta(minutes=10),
            ),
            PlatformConfig(platform_type=PlatformType.LAZADA, encrypted_credentials="x", is_active=False),
        ],
        {
            PlatformType.SHOPEE: fake_connector([shopee_raw()]),
            PlatformType.SHOPIFY: fake_connector([]),
        },
    )


class TestSyncWindow:
    """Tests para la ventana incremental."""

    def test_window_starts_before_last_sync(self, harness):
        config = PlatformConfig(platform_type=PlatformType.SHOPIFY, last_sync=NOW - timedelta(hours=1))

        assert harness.manager.get_sync_window_start(config) == NOW - timedelta(hours=1, minutes=5)

    def test_first_sync_uses_initial_lookback(self, harness):
        config = PlatformConfig(platform_type=PlatformType.SHOPEE)

        assert harness.manager.get_sync_window_start(config) == NOW - timedelta(days=7)

    @pytest.mark.asyncio
    async def test_next_sync_time(self, harness):
        assert await harness.manager.get_next_sync_time("shopee") == NOW
        assert await harness.manager.get_next_sync_time("shopify") == NOW + timedelta(minutes=50)
        assert await harness.manager.get_next_sync_time("tiktok") is None


class TestPerformSync:
    """Tests para el ciclo de sincronización."""

    @pytest.mark.asyncio
    async def test_successful_sync_updates_config(self, harness):
        result = await harness.manager.perform_sync(PlatformType.SHOPEE)

        assert result["status"] == "success"
        assert result["orders_fetched"] == 1
        harness.connectors[PlatformType.SHOPEE].fetch_orders.assert_awaited_once_with(NOW - timedelta(days=7))

        config = await harness.config_repository.get(PlatformType.SHOPEE)
        assert config.last_sync == NOW
        assert config.sync_status == PlatformSyncStatus.COMPLETED
        assert len(config.sync_history) == 1
        assert await harness.order_repository.get(PlatformType.SHOPEE, "B1") is not None

    @pytest.mark.asyncio
    async def test_lock_held_returns_already_in_progress(self, harness):
        """Con el lock tomado no debe haber fetch ni cambios de estado."""
        lock = SyncLock(harness.cache, lock_key(PlatformType.SHOPEE))
        assert await lock.acquire()

        result = await harness.manager.perform_sync("shopee")

        assert result == {"status": "already_in_progress", "platform": "shopee"}
        harness.connectors[PlatformType.SHOPEE].fetch_orders.assert_not_awaited()
        assert (await harness.manager.get_sync_status())["shopee"]["is_locked"] is True

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_last_sync_kept(self, harness):
        harness.connectors[PlatformType.SHOPEE] = fake_connector(
            error=PlatformAPIException("HTTP 500", platform="shopee", api_response_code=500)
        )

        result = await harness.manager.perform_sync("shopee")

        assert result["status"] == "failed"
        config = await harness.config_repository.get(PlatformType.SHOPEE)
        assert config.sync_status == PlatformSyncStatus.FAILED
        assert config.sync_error_message
        assert config.last_sync is None
        assert config.sync_history[-1]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_history_is_capped(self, harness, settings):
        for _ in range(settings.SYNC_HISTORY_LIMIT + 2):
            await harness.manager.force_sync("shopee")

        config = await harness.config_repository.get(PlatformType.SHOPEE)
        assert len(config.sync_history) == settings.SYNC_HISTORY_LIMIT

    @pytest.mark.asyncio
    async def test_inactive_platform_is_skipped(self, harness):
        result = await harness.manager.perform_sync("lazada")

        assert result["status"] == "skipped"

    @pytest.mark.asyncio
    async def test_force_sync_requires_configuration(self, harness):
        with pytest.raises(ValidationException):
            await harness.manager.force_sync("tiktok")

    @pytest.mark.asyncio
    async def test_unknown_platform_is_rejected(self, harness):
        with pytest.raises(ValidationException):
            await harness.manager.perform_sync("ebay")


class TestScheduleSync:
    """Tests para schedule_sync."""

    @pytest.mark.asyncio
    async def test_only_due_platforms_are_synced(self, harness):
        """Shopify sincronizó hace 10 minutos; Shopee nunca."""
        results = await harness.manager.schedule_sync()

        assert list(results) == ["shopee"]
        harness.connectors[PlatformType.SHOPIFY].fetch_orders.assert_not_awaited()


class TestDateRange:
    """Tests para sync_date_range."""

    @pytest.mark.asyncio
    async def test_date_range_does_not_move_last_sync(self, harness):
        start = NOW - timedelta(days=3)
        end = NOW - timedelta(hours=1)

        result = await harness.manager.sync_date_range("shopify", start, end)

        assert result["status"] == "success"
        assert result["window_end"] == end.isoformat()
        config = await harness.config_repository.get(PlatformType.SHOPIFY)
        assert config.last_sync == NOW - timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_date_range_filters_orders_after_end(self, harness):
        result = await harness.manager.sync_date_range("shopee", NOW - timedelta(days=1), NOW - timedelta(hours=1))

        assert result["deduplication"]["total_orders"] == 0

    @pytest.mark.asyncio
    async def test_invalid_range(self, harness):
        with pytest.raises(ValidationException):
            await harness.manager.sync_date_range("shopee", NOW, NOW - timedelta(days=1))


class TestCrossPlatformSync:
    """Escenario completo: un pedido de Shopee duplicado de uno de Shopify."""

    @pytest.mark.asyncio
    async def test_fetched_order_is_marked_duplicate_of_stored_order(self, harness, make_order):
        await harness.order_repository.upsert(
            make_order("A1", PlatformType.SHOPIFY, order_date=NOW - timedelta(hours=1))
        )

        result = await harness.manager.perform_sync("shopee")

        stored = await harness.order_repository.get(PlatformType.SHOPEE, "B1")
        primary = await harness.order_repository.get(PlatformType.SHOPIFY, "A1")
        assert stored.sync_status == SyncStatus.DUPLICATE
        assert stored.notes == "Duplicate of order: A1 (shopify)"
        assert primary.sync_status == SyncStatus.SYNCED
        assert result["deduplication"]["duplicates_marked"] == 1

    @pytest.mark.asyncio
    async def test_second_sync_changes_nothing(self, harness, make_order):
        """Re-sincronizar el mismo pedido conserva su veredicto."""
        await harness.order_repository.upsert(
            make_order("A1", PlatformType.SHOPIFY, order_date=NOW - timedelta(hours=1))
        )
        await harness.manager.perform_sync("shopee")

        result = await harness.manager.force_sync("shopee")

        stored = await harness.order_repository.get(PlatformType.SHOPEE, "B1")
        assert stored.sync_status == SyncStatus.DUPLICATE
        assert stored.notes == "Duplicate of order: A1 (shopify)"
        assert result["deduplication"]["duplicate_groups_found"] == 0
        assert result["storage"]["stored"] == 0
        assert result["storage"]["updated"] == 0


class TestStatusReporting:
    """Tests para get_sync_status y get_sync_statistics."""

    @pytest.mark.asyncio
    async def test_status_per_platform(self, harness):
        status = await harness.manager.get_sync_status()

        assert status["shopee"]["is_due"] is True
        assert status["shopify"]["is_due"] is False
        assert status["lazada"]["is_due"] is False
        assert status["shopee"]["is_locked"] is False

    @pytest.mark.asyncio
    async def test_statistics_aggregate_history(self, harness):
        await harness.manager.force_sync("shopee")
        harness.connectors[PlatformType.SHOPIFY] = fake_connector(error=RuntimeError("boom"))
        await harness.manager.force_sync("shopify")

        stats = await harness.manager.get_sync_statistics()

        assert stats["totals"]["syncs"] == 2
        assert stats["totals"]["successful"] == 1
        assert stats["totals"]["failed"] == 1
        assert stats["totals"]["success_rate"] == 50.0
        assert stats["platforms"]["shopee"]["orders_fetched"] == 1
