"""Tests unitarios para los repositorios en memoria."""

from datetime import UTC, datetime, timedelta

import pytest

from marketsync.db import InMemoryOrderRepository, InMemoryPlatformConfigRepository, UpsertOutcome
from marketsync.domain.models import OrderStatus, PlatformConfig, PlatformSyncStatus, PlatformType, SyncStatus


class TestInMemoryOrderRepository:
    """Tests para el upsert por (platform_order_id, platform_type)."""

    @pytest.mark.asyncio
    async def test_store_update_skip(self, make_order):
        """Debe guardar, actualizar solo si cambió un campo rastreado, o saltar."""
        repository = InMemoryOrderRepository()

        assert await repository.upsert(make_order()) == UpsertOutcome.STORED
        assert await repository.upsert(make_order(notes="only notes changed")) == UpsertOutcome.SKIPPED
        assert await repository.upsert(make_order(status=OrderStatus.SHIPPED)) == UpsertOutcome.UPDATED
        assert await repository.upsert(make_order(status=OrderStatus.SHIPPED, sync_status=SyncStatus.DUPLICATE)) == (
            UpsertOutcome.UPDATED
        )

        stored = await repository.get(PlatformType.SHOPIFY, "A1")
        assert stored.status == OrderStatus.SHIPPED
        assert stored.sync_status == SyncStatus.DUPLICATE
        assert await repository.count() == 1

    @pytest.mark.asyncio
    async def test_resolved_order_date_is_persisted(self, make_order):
        """Una fecha resuelta por deduplicación debe reescribir el pedido."""
        repository = InMemoryOrderRepository()
        original = make_order()
        await repository.upsert(original)
        earlier = original.order_date - timedelta(hours=30)

        assert await repository.upsert(make_order(order_date=earlier)) == UpsertOutcome.UPDATED
        assert (await repository.get(PlatformType.SHOPIFY, "A1")).order_date == earlier

    @pytest.mark.asyncio
    async def test_same_id_on_two_platforms_is_two_orders(self, make_order):
        """La clave incluye la plataforma."""
        repository = InMemoryOrderRepository()

        await repository.upsert(make_order(platform=PlatformType.SHOPIFY))
        await repository.upsert(make_order(platform=PlatformType.SHOPEE))

        assert await repository.count_by_platform() == {"shopify": 1, "shopee": 1}

    @pytest.mark.asyncio
    async def test_returns_copies(self, make_order):
        """Modificar un pedido leído no debe alterar el almacenado."""
        repository = InMemoryOrderRepository()
        await repository.upsert(make_order())

        order = await repository.get(PlatformType.SHOPIFY, "A1")
        order.status = OrderStatus.CANCELLED

        assert (await repository.get(PlatformType.SHOPIFY, "A1")).status == OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_list_orders_filters_window_and_platform(self, make_order):
        """Debe filtrar por ventana de fechas y plataforma, ordenado por fecha."""
        repository = InMemoryOrderRepository()
        start = datetime(2024, 5, 1, tzinfo=UTC)
        for i, platform in enumerate([PlatformType.SHOPEE, PlatformType.LAZADA, PlatformType.SHOPEE]):
            await repository.upsert(make_order(order_id=f"O{i}", platform=platform, order_date=start + timedelta(days=i)))

        in_window = await repository.list_orders(since=start + timedelta(hours=1), until=start + timedelta(days=3))
        shopee_only = await repository.list_orders(platforms=[PlatformType.SHOPEE])

        assert [o.platform_order_id for o in in_window] == ["O1", "O2"]
        assert [o.platform_order_id for o in shopee_only] == ["O0", "O2"]


class TestInMemoryPlatformConfigRepository:
    """Tests para la persistencia de PlatformConfig."""

    @pytest.mark.asyncio
    async def test_list_active_skips_inactive(self):
        """list_active no debe incluir plataformas inactivas."""
        repository = InMemoryPlatformConfigRepository(
            [
                PlatformConfig(platform_type=PlatformType.SHOPEE),
                PlatformConfig(platform_type=PlatformType.LAZADA, is_active=False),
            ]
        )

        assert [c.platform_type for c in await repository.list_active()] == [PlatformType.SHOPEE]
        assert len(await repository.list_all()) == 2

    @pytest.mark.asyncio
    async def test_update_sync_status_keeps_error_only_on_failure(self):
        """El mensaje de error se retiene solo en estado failed."""
        repository = InMemoryPlatformConfigRepository([PlatformConfig(platform_type=PlatformType.TIKTOK)])

        failed = await repository.update_sync_status(PlatformType.TIKTOK, PlatformSyncStatus.FAILED, "auth failed")
        assert failed.sync_error_message == "auth failed"

        in_progress = await repository.update_sync_status(PlatformType.TIKTOK, PlatformSyncStatus.IN_PROGRESS)
        assert in_progress.sync_error_message is None
        assert in_progress.last_sync_attempt is not None

    @pytest.mark.asyncio
    async def test_update_sync_status_for_missing_platform(self):
        """Debe devolver None si la plataforma no está configurada."""
        repository = InMemoryPlatformConfigRepository()

        assert await repository.update_sync_status(PlatformType.SHOPIFY, PlatformSyncStatus.FAILED) is None
