"""
Motor de scheduling para sincronización automática de plataformas.

Este módulo dispara SyncManager.schedule_sync() cada
SCHEDULER_INTERVAL_SECONDS. SyncManager decide qué plataformas están
vencidas; el scheduler solo provee el tick.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any, Dict, Optional

from marketsync.core.config import Settings, get_settings
from marketsync.services.sync_manager import SyncManager

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Loop periódico sobre SyncManager.schedule_sync().

    Args:
        sync_manager: Gestor de sincronización
        settings: Configuración (SCHEDULER_INTERVAL_SECONDS)
    """

    def __init__(self, sync_manager: SyncManager, settings: Optional[Settings] = None):
        self.sync_manager = sync_manager
        self.settings = settings or get_settings()
        self.interval = self.settings.SCHEDULER_INTERVAL_SECONDS
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.last_run: Optional[datetime] = None
        self.last_results: Dict[str, Any] = {}
        self.runs = 0
        self.errors = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Inicia el loop del scheduler en segundo plano."""
        if self.is_running:
            logger.warning("Scheduler ya está ejecutándose")
            return

        logger.info(f"🕒 Iniciando scheduler de sincronización cada {self.interval}s")
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Detiene el scheduler y espera a que termine el ciclo en curso."""
        if not self.is_running:
            logger.info("Scheduler no está ejecutándose")
            return

        logger.info("🛑 Deteniendo scheduler")
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("✅ Scheduler detenido")

    async def run_once(self) -> Dict[str, Any]:
        """
        Ejecuta un ciclo de sincronización.

        Los errores se registran y no detienen el scheduler.

        Returns:
            Dict: Resultado por plataforma del ciclo
        """
        self.runs += 1
        self.last_run = datetime.now(UTC)
        try:
            self.last_results = await self.sync_manager.schedule_sync()
        except Exception as e:
            self.errors += 1
            logger.error(f"❌ Error en ciclo del scheduler: {e}")
            self.last_results = {}
        return self.last_results

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "interval_seconds": self.interval,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "runs": self.runs,
            "errors": self.errors,
            "last_results": {p: r.get("status") for p, r in self.last_results.items()},
        }

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except TimeoutError:
                continue
