"""
Wiring of the reconciliation services.

build_container() creates every shared object once (cache, circuit
breakers, rate limiter, SSRF guard, credential store, connector factory)
and passes them by reference; nothing in the pipeline reaches for ambient
global state.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from marketsync.core.cache_manager import CacheBackend, create_cache
from marketsync.core.config import Settings, get_settings
from marketsync.core.redis_client import close_redis
from marketsync.core.scheduler import SyncScheduler
from marketsync.db import InMemoryOrderRepository, InMemoryPlatformConfigRepository
from marketsync.db.interfaces import IOrderRepository, IPlatformConfigRepository
from marketsync.services.conflict_resolver import ConflictResolver
from marketsync.services.connectors.factory import ConnectorFactory
from marketsync.services.credential_store import CredentialStore
from marketsync.services.deduplication_engine import DeduplicationEngine
from marketsync.services.order_aggregator import OrderAggregator
from marketsync.services.order_normalizer import OrderNormalizer
from marketsync.services.sync_manager import SyncManager
from marketsync.utils.circuit_breaker import CircuitBreakerRegistry
from marketsync.utils.error_handler import ValidationException
from marketsync.utils.rate_limiter import SlidingWindowRateLimiter
from marketsync.utils.ssrf_guard import SsrfGuard

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Servicios compartidos de un proceso."""

    settings: Settings
    cache: CacheBackend
    config_repository: IPlatformConfigRepository
    order_repository: IOrderRepository
    credential_store: CredentialStore
    breakers: CircuitBreakerRegistry
    connector_factory: ConnectorFactory
    aggregator: OrderAggregator
    dedup_engine: DeduplicationEngine
    sync_manager: SyncManager
    scheduler: SyncScheduler

    async def close(self) -> None:
        """Libera conexiones HTTP y del cache."""
        if self.scheduler.is_running:
            await self.scheduler.stop()
        await self.connector_factory.close()
        await self.cache.close()
        if self.settings.REDIS_URL:
            await close_redis()
        logger.info("👋 Services closed")


def build_container(
    settings: Optional[Settings] = None,
    config_repository: Optional[IPlatformConfigRepository] = None,
    order_repository: Optional[IOrderRepository] = None,
    cache: Optional[CacheBackend] = None,
) -> ServiceContainer:
    """
    Crea y conecta todos los servicios.

    Args:
        settings: Configuración (por defecto get_settings())
        config_repository: Persistencia de PlatformConfig (en memoria por defecto)
        order_repository: Persistencia de pedidos (en memoria por defecto)
        cache: Backend de cache (Redis o memoria según REDIS_URL)

    Returns:
        ServiceContainer: Servicios listos para usar
    """
    settings = settings or get_settings()
    cache = cache or create_cache(settings)
    config_repository = config_repository or InMemoryPlatformConfigRepository()
    order_repository = order_repository or InMemoryOrderRepository()

    credential_store = CredentialStore(config_repository, cache, settings=settings)
    breakers = CircuitBreakerRegistry(cache=cache, settings=settings)
    connector_factory = ConnectorFactory(
        credential_store,
        breakers,
        rate_limiter=SlidingWindowRateLimiter(),
        ssrf_guard=SsrfGuard(),
        settings=settings,
    )
    aggregator = OrderAggregator(connector_factory, OrderNormalizer(), config_repository, order_repository)
    dedup_engine = DeduplicationEngine(ConflictResolver(), settings=settings)
    sync_manager = SyncManager(config_repository, order_repository, aggregator, dedup_engine, cache, settings=settings)

    return ServiceContainer(
        settings=settings,
        cache=cache,
        config_repository=config_repository,
        order_repository=order_repository,
        credential_store=credential_store,
        breakers=breakers,
        connector_factory=connector_factory,
        aggregator=aggregator,
        dedup_engine=dedup_engine,
        sync_manager=sync_manager,
        scheduler=SyncScheduler(sync_manager, settings=settings),
    )


async def load_platform_credentials(container: ServiceContainer, path: Optional[str] = None) -> Dict[str, Any]:
    """
    Carga credenciales de plataformas desde un archivo JSON.

    Cada plataforma se valida por separado: una entrada inválida se
    registra y no impide cargar las demás.

    Args:
        container: Servicios del proceso
        path: Ruta del archivo (por defecto PLATFORM_CREDENTIALS_FILE)

    Returns:
        Dict: {"loaded": [...], "failed": {plataforma: error}}
    """
    path = path or container.settings.PLATFORM_CREDENTIALS_FILE
    summary: Dict[str, Any] = {"loaded": [], "failed": {}}
    if not path:
        return summary

    file_path = Path(path)
    if not file_path.is_file():
        raise ValidationException(
            message=f"Credentials file not found: {path}",
            field="PLATFORM_CREDENTIALS_FILE",
            invalid_value=path,
        )

    try:
        entries = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationException(
            message=f"Credentials file is not valid JSON: {e.msg}",
            field="PLATFORM_CREDENTIALS_FILE",
            invalid_value=path,
        ) from None

    if not isinstance(entries, dict):
        raise ValidationException(
            message="Credentials file must contain an object keyed by platform",
            field="PLATFORM_CREDENTIALS_FILE",
            invalid_value=path,
        )

    for platform, credentials in entries.items():
        if not isinstance(credentials, dict):
            summary["failed"][platform] = "Credentials must be an object"
            continue
        try:
            await container.credential_store.store(platform, credentials)
            summary["loaded"].append(platform)
        except ValidationException as e:
            logger.error(f"❌ Invalid credentials for {platform}: {e.message}")
            summary["failed"][platform] = e.message

    logger.info(f"Loaded credentials for {len(summary['loaded'])} platform(s) from {file_path.name}")
    return summary
