"""
PlatformConfigRepository: in-memory store of PlatformConfig records.

Writes for one platform are serialized with a per-platform lock; reads
return copies so callers never share mutable state.
"""

import copy
import logging
from datetime import UTC, datetime

from marketsync.domain.models import PlatformConfig, PlatformSyncStatus, PlatformType
from marketsync.utils.distributed_lock import KeyedLocks

logger = logging.getLogger(__name__)


class InMemoryPlatformConfigRepository:
    """Repository for platform configurations kept in process memory."""

    def __init__(self, configs: list[PlatformConfig] | None = None):
        self._configs: dict[PlatformType, PlatformConfig] = {}
        self._locks = KeyedLocks()
        for config in configs or []:
            self._configs[config.platform_type] = copy.deepcopy(config)

    async def get(self, platform: PlatformType) -> PlatformConfig | None:
        config = self._configs.get(PlatformType.parse(platform))
        return copy.deepcopy(config) if config else None

    async def save(self, config: PlatformConfig) -> PlatformConfig:
        async with self._locks(config.platform_type.value):
            self._configs[config.platform_type] = copy.deepcopy(config)
        return config

    async def list_all(self) -> list[PlatformConfig]:
        return [copy.deepcopy(c) for c in self._configs.values()]

    async def list_active(self) -> list[PlatformConfig]:
        return [copy.deepcopy(c) for c in self._configs.values() if c.is_active]

    async def update_sync_status(
        self,
        platform: PlatformType,
        status: PlatformSyncStatus,
        error_message: str | None = None,
        attempted_at: datetime | None = None,
    ) -> PlatformConfig | None:
        """
        Actualiza el estado de sincronización de una plataforma.

        Args:
            platform: Plataforma a actualizar
            status: Nuevo estado
            error_message: Mensaje retenido para operadores (solo en fallos)
            attempted_at: Momento del intento (por defecto ahora)

        Returns:
            PlatformConfig | None: Configuración actualizada, None si no existe
        """
        platform = PlatformType.parse(platform)
        async with self._locks(platform.value):
            config = self._configs.get(platform)
            if config is None:
                logger.warning(f"No configuration found for platform {platform.value}")
                return None

            config.sync_status = status
            config.sync_error_message = error_message if status == PlatformSyncStatus.FAILED else None
            if status == PlatformSyncStatus.IN_PROGRESS or attempted_at is not None:
                config.last_sync_attempt = attempted_at or datetime.now(UTC)
            return copy.deepcopy(config)
