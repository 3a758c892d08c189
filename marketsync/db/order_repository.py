"""
OrderRepository: in-memory canonical order store.

Upserts are keyed by (platform order id, platform). An incoming order only
overwrites the stored one when a tracked field changed; otherwise the
write is skipped.
"""

import asyncio
import copy
import logging
from datetime import datetime

from marketsync.db.interfaces import UpsertOutcome
from marketsync.domain.models import CanonicalOrder, PlatformType

logger = logging.getLogger(__name__)

# Fields whose change justifies rewriting a stored order
TRACKED_FIELDS = (
    "status",
    "total_amount",
    "currency",
    "customer_name",
    "customer_email",
    "customer_phone",
    "shipping_address",
    "billing_address",
    "order_date",
    "sync_status",
)


def has_order_changed(existing: CanonicalOrder, incoming: CanonicalOrder) -> bool:
    """
    Compara los campos rastreados de dos versiones del mismo pedido.

    Args:
        existing: Pedido almacenado
        incoming: Pedido recién normalizado

    Returns:
        bool: True si algún campo rastreado cambió
    """
    return any(getattr(existing, name) != getattr(incoming, name) for name in TRACKED_FIELDS)


class InMemoryOrderRepository:
    """Repository for canonical orders kept in process memory."""

    def __init__(self):
        self._orders: dict[tuple[str, str], CanonicalOrder] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, order: CanonicalOrder) -> UpsertOutcome:
        """
        Store, update or skip an order.

        Args:
            order: Canonical order to persist

        Returns:
            UpsertOutcome: What happened to the record
        """
        async with self._lock:
            existing = self._orders.get(order.key)
            if existing is None:
                self._orders[order.key] = copy.deepcopy(order)
                return UpsertOutcome.STORED

            if not has_order_changed(existing, order):
                return UpsertOutcome.SKIPPED

            self._orders[order.key] = copy.deepcopy(order)
            logger.debug(f"Order {order.platform_order_id} ({order.platform_type.value}) updated")
            return UpsertOutcome.UPDATED

    async def get(self, platform: PlatformType, platform_order_id: str) -> CanonicalOrder | None:
        order = self._orders.get((str(platform_order_id), PlatformType.parse(platform).value))
        return copy.deepcopy(order) if order else None

    async def list_orders(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        platforms: list[PlatformType] | None = None,
    ) -> list[CanonicalOrder]:
        wanted = {PlatformType.parse(p) for p in platforms} if platforms else None
        result = []
        for order in self._orders.values():
            if since and order.order_date < since:
                continue
            if until and order.order_date > until:
                continue
            if wanted and order.platform_type not in wanted:
                continue
            result.append(copy.deepcopy(order))
        return sorted(result, key=lambda o: o.order_date)

    async def count(self) -> int:
        return len(self._orders)

    async def count_by_platform(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for order in self._orders.values():
            counts[order.platform_type.value] = counts.get(order.platform_type.value, 0) + 1
        return counts
