"""
Factory and registry for platform connectors.

ConnectorFactory is an explicit object passed by reference: it owns one
connector instance per platform and shares the credential store, rate
limiter, SSRF guard and circuit breaker registry between them.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from marketsync.core.config import Settings, get_settings
from marketsync.domain.models import PlatformType
from marketsync.services.connectors.base_connector import BasePlatformConnector
from marketsync.services.connectors.lazada_connector import LazadaConnector
from marketsync.services.connectors.shopee_connector import ShopeeConnector
from marketsync.services.connectors.shopify_connector import ShopifyConnector
from marketsync.services.connectors.tiktok_connector import TikTokConnector
from marketsync.services.credential_store import CredentialStore
from marketsync.utils.circuit_breaker import CircuitBreakerRegistry
from marketsync.utils.error_handler import ValidationException
from marketsync.utils.rate_limiter import SlidingWindowRateLimiter
from marketsync.utils.ssrf_guard import SsrfGuard

logger = logging.getLogger(__name__)

DEFAULT_CONNECTORS: Dict[PlatformType, type[BasePlatformConnector]] = {
    PlatformType.SHOPEE: ShopeeConnector,
    PlatformType.LAZADA: LazadaConnector,
    PlatformType.SHOPIFY: ShopifyConnector,
    PlatformType.TIKTOK: TikTokConnector,
}


def breaker_name(platform: PlatformType) -> str:
    return f"platform_{platform.value}"


class ConnectorFactory:
    """
    Crea y cachea conectores por plataforma.

    Args:
        credential_store: Almacén compartido de credenciales
        breakers: Registro de circuit breakers (uno por plataforma)
        rate_limiter: Rate limiter compartido
        ssrf_guard: Guarda SSRF compartida
        settings: Configuración de la aplicación
        registry: Mapeo plataforma -> clase de conector
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        breakers: CircuitBreakerRegistry,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        ssrf_guard: Optional[SsrfGuard] = None,
        settings: Optional[Settings] = None,
        registry: Optional[Dict[PlatformType, type[BasePlatformConnector]]] = None,
    ):
        self.settings = settings or get_settings()
        self.credential_store = credential_store
        self.breakers = breakers
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.ssrf_guard = ssrf_guard or SsrfGuard()
        self.registry = dict(registry or DEFAULT_CONNECTORS)
        self._connectors: Dict[PlatformType, BasePlatformConnector] = {}
        self._lock = asyncio.Lock()
        self._created_count = 0

    def available_platforms(self) -> List[PlatformType]:
        return list(self.registry)

    def is_supported(self, platform: Union[PlatformType, str]) -> bool:
        try:
            return PlatformType.parse(platform) in self.registry
        except ValueError:
            return False

    async def create(self, platform: Union[PlatformType, str]) -> BasePlatformConnector:
        """
        Obtiene el conector de una plataforma, creándolo si no existe.

        Args:
            platform: Plataforma solicitada

        Returns:
            BasePlatformConnector: Instancia compartida del conector

        Raises:
            ValidationException: Si la plataforma no está soportada
        """
        platform = self._resolve(platform)
        async with self._lock:
            connector = self._connectors.get(platform)
            if connector is None:
                connector = self.registry[platform](
                    credential_store=self.credential_store,
                    circuit_breaker=self.breakers.get(breaker_name(platform)),
                    rate_limiter=self.rate_limiter,
                    ssrf_guard=self.ssrf_guard,
                    settings=self.settings,
                )
                self._connectors[platform] = connector
                self._created_count += 1
                logger.debug(f"Created {type(connector).__name__} for {platform.value}")
            return connector

    def get_configuration_schema(self, platform: Union[PlatformType, str]) -> Dict[str, Any]:
        """Esquema de credenciales sin necesidad de credenciales configuradas."""
        platform = self._resolve(platform)
        connector = self._connectors.get(platform) or self.registry[platform](
            credential_store=self.credential_store,
            circuit_breaker=self.breakers.get(breaker_name(platform)),
            rate_limiter=self.rate_limiter,
            ssrf_guard=self.ssrf_guard,
            settings=self.settings,
        )
        return connector.get_configuration_schema()

    async def test_connection(self, platform: Union[PlatformType, str]) -> bool:
        """Autentica contra la plataforma con las credenciales almacenadas."""
        try:
            connector = await self.create(platform)
        except ValidationException as e:
            logger.error(f"❌ Cannot test connection: {e.message}")
            return False
        return await connector.authenticate()

    async def get_configured_connectors(self) -> Dict[PlatformType, BasePlatformConnector]:
        """Conectores de todas las plataformas activas con credenciales."""
        connectors = {}
        for platform in await self.credential_store.get_configured_platforms():
            if platform in self.registry:
                connectors[platform] = await self.create(platform)
        return connectors

    async def clear_cache(self) -> None:
        """Cierra y descarta los conectores creados."""
        async with self._lock:
            connectors = list(self._connectors.values())
            self._connectors.clear()
        for connector in connectors:
            await connector.close()
        logger.debug("Platform connector cache cleared")

    async def close(self) -> None:
        await self.clear_cache()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "available_platforms": [p.value for p in self.registry],
            "cached_connectors": len(self._connectors),
            "cached_platforms": [p.value for p in self._connectors],
            "created_total": self._created_count,
        }

    def _resolve(self, platform: Union[PlatformType, str]) -> PlatformType:
        try:
            resolved = PlatformType.parse(platform)
        except ValueError:
            resolved = None
        if resolved is None or resolved not in self.registry:
            raise ValidationException(
                message=f"Unsupported platform: {platform}",
                field="platform",
                invalid_value=platform,
                expected_format=", ".join(p.value for p in self.registry),
            )
        return resolved
