"""
Sync operation manager for coordinating and tracking platform syncs.

This module owns the per-platform sync cycle: decide which platforms are
due, take the platform's advisory lock, compute the incremental window,
aggregate, deduplicate, store, and keep the bounded result history on the
platform configuration.
"""

import asyncio
import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from marketsync.core.cache_manager import CacheBackend
from marketsync.core.config import Settings, get_settings
from marketsync.core.logging_config import log_sync_operation
from marketsync.db.interfaces import IOrderRepository, IPlatformConfigRepository
from marketsync.domain.models import CanonicalOrder, PlatformConfig, PlatformSyncStatus, PlatformType
from marketsync.services.deduplication_engine import DeduplicationEngine
from marketsync.services.order_aggregator import OrderAggregator
from marketsync.utils.distributed_lock import SyncLock, sync_lock
from marketsync.utils.error_handler import SyncException, ValidationException, convert_to_app_exception, log_error

logger = logging.getLogger(__name__)


def lock_key(platform: PlatformType) -> str:
    return f"sync_lock_{platform.value}"


class SyncManager:
    """
    Coordina la sincronización periódica de cada plataforma.

    Args:
        config_repository: Persistencia de PlatformConfig
        order_repository: Persistencia de pedidos canónicos
        aggregator: Agregador de pedidos por plataforma
        dedup_engine: Motor de deduplicación
        cache: Cache compartido donde viven los locks de sync
        settings: Configuración de la aplicación
        clock: Reloj UTC (inyectable en tests)
    """

    def __init__(
        self,
        config_repository: IPlatformConfigRepository,
        order_repository: IOrderRepository,
        aggregator: OrderAggregator,
        dedup_engine: DeduplicationEngine,
        cache: CacheBackend,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.config_repository = config_repository
        self.order_repository = order_repository
        self.aggregator = aggregator
        self.dedup_engine = dedup_engine
        self.cache = cache
        self.settings = settings or get_settings()
        self.clock = clock

    async def schedule_sync(self) -> Dict[str, Dict[str, Any]]:
        """
        Ejecuta perform_sync en paralelo para cada plataforma activa y vencida.

        Returns:
            Dict: Resultado de cada plataforma sincronizada
        """
        now = self.clock()
        due = [c.platform_type for c in await self.config_repository.list_active() if c.is_sync_due(now)]
        if not due:
            logger.debug("No platforms due for sync")
            return {}

        logger.info(f"🕒 Platforms due for sync: {', '.join(p.value for p in due)}")
        results = await asyncio.gather(*(self.perform_sync(p) for p in due))
        return {p.value: r for p, r in zip(due, results)}

    async def perform_sync(self, platform: Union[PlatformType, str]) -> Dict[str, Any]:
        """
        Sincroniza una plataforma desde su última sincronización.

        La ventana es last_sync menos el solapamiento configurado, o los
        últimos SYNC_INITIAL_LOOKBACK_DAYS días si nunca se sincronizó.

        Returns:
            Dict: Resultado del ciclo (status success, failed, skipped o already_in_progress)
        """
        platform = self._parse_platform(platform)
        config = await self.config_repository.get(platform)
        if config is None or not config.is_active:
            logger.info(f"Skipping sync for {platform.value}: not configured or inactive")
            return {"status": "skipped", "platform": platform.value, "reason": "inactive"}

        return await self._run_locked(platform, self.get_sync_window_start(config), None, "scheduled", True)

    async def force_sync(self, platform: Union[PlatformType, str]) -> Dict[str, Any]:
        """
        Sincroniza una plataforma ahora, esté o no vencida.

        Respeta el lock: si ya hay un sync en curso devuelve already_in_progress.
        """
        platform = self._parse_platform(platform)
        config = await self.config_repository.get(platform)
        if config is None:
            raise ValidationException(
                message=f"Platform {platform.value} is not configured",
                field="platform",
                invalid_value=platform.value,
            )

        logger.info(f"🔄 Forced sync requested for {platform.value}")
        return await self._run_locked(platform, self.get_sync_window_start(config), None, "forced", True)

    async def sync_date_range(
        self, platform: Union[PlatformType, str], start: datetime, end: datetime
    ) -> Dict[str, Any]:
        """
        Re-sincroniza un rango de fechas (backfill).

        No modifica last_sync: el siguiente ciclo incremental sigue donde estaba.
        """
        platform = self._parse_platform(platform)
        if start >= end:
            raise ValidationException(
                message="start must be before end",
                field="start",
                invalid_value=start.isoformat(),
            )
        if await self.config_repository.get(platform) is None:
            raise ValidationException(
                message=f"Platform {platform.value} is not configured",
                field="platform",
                invalid_value=platform.value,
            )
        return await self._run_locked(platform, start, end, "date_range", False)

    def get_sync_window_start(self, config: PlatformConfig) -> datetime:
        """Inicio de la ventana incremental de una plataforma."""
        if config.last_sync is not None:
            return config.last_sync - timedelta(minutes=self.settings.SYNC_OVERLAP_MINUTES)
        return self.clock() - timedelta(days=self.settings.SYNC_INITIAL_LOOKBACK_DAYS)

    async def get_next_sync_time(self, platform: Union[PlatformType, str]) -> Optional[datetime]:
        """
        Próximo momento en que la plataforma estará vencida.

        Returns:
            datetime: last_sync + sync_interval, ahora si nunca se sincronizó,
            None si la plataforma no está configurada
        """
        config = await self.config_repository.get(self._parse_platform(platform))
        if config is None:
            return None
        return config.next_sync_at or self.clock()

    async def get_sync_status(self) -> Dict[str, Dict[str, Any]]:
        """Estado de sincronización de cada plataforma configurada."""
        now = self.clock()
        status = {}
        for config in await self.config_repository.list_all():
            lock = SyncLock(self.cache, lock_key(config.platform_type))
            status[config.platform_type.value] = {
                "is_active": config.is_active,
                "sync_status": config.sync_status.value,
                "last_sync": config.last_sync.isoformat() if config.last_sync else None,
                "last_sync_attempt": config.last_sync_attempt.isoformat() if config.last_sync_attempt else None,
                "next_sync_at": (config.next_sync_at or now).isoformat(),
                "is_due": config.is_active and config.is_sync_due(now),
                "is_locked": await lock.is_locked(),
                "sync_error_message": config.sync_error_message,
                "last_sync_results": config.sync_metadata.get("last_sync_results"),
            }
        return status

    async def get_sync_statistics(self) -> Dict[str, Any]:
        """Agrega el historial acotado de todas las plataformas."""
        per_platform = {}
        totals = {"syncs": 0, "successful": 0, "failed": 0, "orders_fetched": 0, "duplicates_marked": 0}

        for config in await self.config_repository.list_all():
            history = config.sync_history
            stats = {
                "syncs": len(history),
                "successful": sum(1 for h in history if h.get("status") == "success"),
                "failed": sum(1 for h in history if h.get("status") == "failed"),
                "orders_fetched": sum(h.get("orders_fetched", 0) for h in history),
                "duplicates_marked": sum((h.get("deduplication") or {}).get("duplicates_marked", 0) for h in history),
                "average_duration_seconds": (
                    round(sum(h.get("duration_seconds", 0) for h in history) / len(history), 2) if history else 0
                ),
            }
            per_platform[config.platform_type.value] = stats
            for key in totals:
                totals[key] += stats[key]

        totals["success_rate"] = round(totals["successful"] / totals["syncs"] * 100, 2) if totals["syncs"] else 0
        return {"totals": totals, "platforms": per_platform}

    # === CICLO DE SINCRONIZACIÓN ===

    async def _run_locked(
        self,
        platform: PlatformType,
        since: datetime,
        until: Optional[datetime],
        trigger: str,
        update_last_sync: bool,
    ) -> Dict[str, Any]:
        async with sync_lock(self.cache, lock_key(platform), self.settings.SYNC_LOCK_TTL_SECONDS) as acquired:
            if not acquired:
                logger.info(f"Sync for {platform.value} already in progress, skipping")
                return {"status": "already_in_progress", "platform": platform.value}
            return await self._sync(platform, since, until, trigger, update_last_sync)

    async def _sync(
        self,
        platform: PlatformType,
        since: datetime,
        until: Optional[datetime],
        trigger: str,
        update_last_sync: bool,
    ) -> Dict[str, Any]:
        started_at = self.clock()
        started = time.monotonic()
        await self.config_repository.update_sync_status(
            platform, PlatformSyncStatus.IN_PROGRESS, attempted_at=started_at
        )
        log_sync_operation("sync_started", platform.value, trigger=trigger, since=since.isoformat())

        result: Dict[str, Any] = {
            "platform": platform.value,
            "trigger": trigger,
            "started_at": started_at.isoformat(),
            "window_start": since.isoformat(),
            "window_end": until.isoformat() if until else None,
        }

        try:
            aggregation = await self.aggregator.aggregate(since=since, platforms=[platform])
            platform_result = aggregation.platform_results.get(platform)
            if platform_result is None or not platform_result.succeeded:
                raise SyncException(
                    message=f"Fetching orders from {platform.value} failed",
                    service=platform.value,
                    operation="aggregate",
                    sync_stats=platform_result.to_dict() if platform_result else None,
                )

            fetched = aggregation.orders_for(platform)
            if until is not None:
                fetched = [o for o in fetched if o.order_date <= until]
            await self._carry_over_dedup_state(fetched)

            working_set = await self._build_working_set(fetched, since, until)
            report = self.dedup_engine.detect_and_resolve(working_set)
            store_stats = await self.aggregator.store_orders(working_set)

            result.update(
                {
                    "status": "success",
                    "orders_fetched": platform_result.fetched,
                    "orders_normalized": platform_result.normalized,
                    "normalization_errors": platform_result.failed,
                    "deduplication": report.to_dict(),
                    "storage": store_stats,
                }
            )

        except Exception as e:
            error = convert_to_app_exception(e, {"platform": platform.value})
            log_error(error, {"platform": platform.value, "operation": "perform_sync"})
            result.update({"status": "failed", "error": error.message})

        result["duration_seconds"] = round(time.monotonic() - started, 3)
        await self._record_result(platform, result, started_at, update_last_sync)
        log_sync_operation("sync_finished", platform.value, status=result["status"], trigger=trigger)

        if result["status"] == "success":
            logger.info(
                f"✅ Sync {platform.value} completed: {result['orders_fetched']} fetched, "
                f"{result['deduplication']['duplicates_marked']} duplicates marked "
                f"({result['duration_seconds']}s)"
            )
        else:
            logger.error(f"❌ Sync {platform.value} failed: {result['error']}")
        return result

    async def _carry_over_dedup_state(self, orders: List[CanonicalOrder]) -> None:
        # A re-fetched order keeps the dedup verdict already stored for it
        for order in orders:
            existing = await self.order_repository.get(order.platform_type, order.platform_order_id)
            if existing is None:
                continue
            order.sync_status = existing.sync_status
            if existing.notes:
                order.notes = existing.notes

    async def _build_working_set(
        self, fetched: List[CanonicalOrder], since: datetime, until: Optional[datetime]
    ) -> List[CanonicalOrder]:
        fetched_keys = {o.key for o in fetched}
        stored = await self.order_repository.list_orders(since=since, until=until)
        return fetched + [o for o in stored if o.key not in fetched_keys]

    async def _record_result(
        self, platform: PlatformType, result: Dict[str, Any], started_at: datetime, update_last_sync: bool
    ) -> None:
        config = await self.config_repository.get(platform)
        if config is None:
            logger.warning(f"Platform {platform.value} disappeared during sync, result not recorded")
            return

        config.record_sync_result(result, history_limit=self.settings.SYNC_HISTORY_LIMIT)
        config.last_sync_attempt = started_at
        if result["status"] == "success":
            config.sync_status = PlatformSyncStatus.COMPLETED
            config.sync_error_message = None
            if update_last_sync:
                config.last_sync = started_at
        else:
            config.sync_status = PlatformSyncStatus.FAILED
            config.sync_error_message = result.get("error")
        await self.config_repository.save(config)

    @staticmethod
    def _parse_platform(platform: Union[PlatformType, str]) -> PlatformType:
        try:
            return PlatformType.parse(platform)
        except ValueError:
            raise ValidationException(
                message=f"Unsupported platform: {platform}", field="platform", invalid_value=platform
            ) from None
