"""
Order aggregation across platforms.

Fans out to every active platform concurrently: authenticate, fetch raw
orders, normalize. A platform-level failure (auth, fetch, open circuit,
rate limit, SSRF rejection) is caught, logged and recorded on that
platform's configuration; sibling platforms are never affected.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from marketsync.db.interfaces import IOrderRepository, IPlatformConfigRepository, UpsertOutcome
from marketsync.domain.models import CanonicalOrder, PlatformSyncStatus, PlatformType
from marketsync.services.connectors.factory import ConnectorFactory
from marketsync.services.order_normalizer import OrderNormalizer
from marketsync.utils.error_handler import (
    AppException,
    AuthenticationException,
    convert_to_app_exception,
    log_error,
)

logger = logging.getLogger(__name__)


@dataclass
class PlatformFetchResult:
    """Outcome of fetching one platform."""

    platform: PlatformType
    status: str = "success"
    fetched: int = 0
    normalized: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform.value,
            "status": self.status,
            "fetched": self.fetched,
            "normalized": self.normalized,
            "failed": self.failed,
            "errors": self.errors,
        }


@dataclass
class AggregationResult:
    """Concatenated orders plus the per-platform outcome."""

    orders: List[CanonicalOrder] = field(default_factory=list)
    platform_results: Dict[PlatformType, PlatformFetchResult] = field(default_factory=dict)

    @property
    def failed_platforms(self) -> List[PlatformType]:
        return [p for p, r in self.platform_results.items() if not r.succeeded]

    def orders_for(self, platform: PlatformType) -> List[CanonicalOrder]:
        return [o for o in self.orders if o.platform_type == platform]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_orders": len(self.orders),
            "platforms": {p.value: r.to_dict() for p, r in self.platform_results.items()},
        }


class OrderAggregator:
    """
    Aggregates canonical orders from every active platform.

    Args:
        connector_factory: Source of platform connectors
        normalizer: Raw payload normalizer
        config_repository: Platform configuration persistence
        order_repository: Canonical order persistence (for store_orders)
    """

    def __init__(
        self,
        connector_factory: ConnectorFactory,
        normalizer: OrderNormalizer,
        config_repository: IPlatformConfigRepository,
        order_repository: Optional[IOrderRepository] = None,
    ):
        self.connector_factory = connector_factory
        self.normalizer = normalizer
        self.config_repository = config_repository
        self.order_repository = order_repository

    async def aggregate(
        self,
        since: Optional[datetime] = None,
        platforms: Optional[List[PlatformType]] = None,
    ) -> AggregationResult:
        """
        Fetch and normalize orders from all active platforms.

        Args:
            since: Only orders created after this time
            platforms: Restrict to these platforms (all active when omitted)

        Returns:
            AggregationResult: Orders and per-platform results
        """
        configs = await self.config_repository.list_active()
        targets = [c.platform_type for c in configs]
        if platforms is not None:
            wanted = {PlatformType.parse(p) for p in platforms}
            targets = [p for p in targets if p in wanted]

        result = AggregationResult()
        if not targets:
            logger.info("No active platforms to aggregate")
            return result

        logger.info(f"🔄 Aggregating orders from {', '.join(p.value for p in targets)}")
        outcomes = await asyncio.gather(*(self._aggregate_platform(p, since) for p in targets))

        for orders, platform_result in outcomes:
            result.orders.extend(orders)
            result.platform_results[platform_result.platform] = platform_result

        logger.info(
            f"Aggregated {len(result.orders)} orders "
            f"({len(result.failed_platforms)} of {len(targets)} platforms failed)"
        )
        return result

    async def _aggregate_platform(
        self, platform: PlatformType, since: Optional[datetime]
    ) -> tuple[List[CanonicalOrder], PlatformFetchResult]:
        platform_result = PlatformFetchResult(platform=platform)
        try:
            connector = await self.connector_factory.create(platform)
            if not await connector.authenticate():
                raise AuthenticationException(f"Authentication with {platform.value} failed", platform.value)

            raw_orders = await connector.fetch_orders(since)
            orders, errors = self.normalizer.batch_normalize(raw_orders, platform)

            platform_result.fetched = len(raw_orders)
            platform_result.normalized = len(orders)
            platform_result.failed = errors.count
            platform_result.errors = errors.messages()
            logger.info(
                f"✅ {platform.value}: {len(raw_orders)} fetched, {len(orders)} normalized, {errors.count} failed"
            )
            return orders, platform_result

        except Exception as e:
            error = e if isinstance(e, AppException) else convert_to_app_exception(e, {"platform": platform.value})
            log_error(error, {"platform": platform.value, "operation": "aggregate"})
            platform_result.status = "failed"
            platform_result.errors = [str(error)]
            await self.config_repository.update_sync_status(
                platform, PlatformSyncStatus.FAILED, error_message=error.message
            )
            return [], platform_result

    async def store_orders(self, orders: List[CanonicalOrder]) -> Dict[str, int]:
        """
        Upsert orders through the order repository.

        Each order is stored, updated (tracked fields changed) or skipped;
        a failing order is counted and does not stop the rest.

        Returns:
            Dict: Counters stored, updated, skipped, errors
        """
        if self.order_repository is None:
            raise RuntimeError("OrderAggregator was built without an order repository")

        stats = {"stored": 0, "updated": 0, "skipped": 0, "errors": 0}
        for order in orders:
            try:
                outcome = await self.order_repository.upsert(order)
            except Exception as e:
                stats["errors"] += 1
                log_error(e, {"order_id": order.platform_order_id, "platform": order.platform_type.value})
                continue

            if outcome == UpsertOutcome.STORED:
                stats["stored"] += 1
            elif outcome == UpsertOutcome.UPDATED:
                stats["updated"] += 1
            else:
                stats["skipped"] += 1

        logger.info(
            f"Stored orders: {stats['stored']} new, {stats['updated']} updated, "
            f"{stats['skipped']} unchanged, {stats['errors']} errors"
        )
        return stats
