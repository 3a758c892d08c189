"""
Interfaces/Protocols for the persistence collaborator.

The reconciliation core never talks to a database directly: it decides
store/update/skip and hands orders to whatever implements these
protocols. The in-memory implementations in this package back the CLI
and the tests.
"""

from datetime import datetime
from enum import Enum
from typing import Protocol

from marketsync.domain.models import CanonicalOrder, PlatformConfig, PlatformSyncStatus, PlatformType


class UpsertOutcome(str, Enum):
    """Resultado de un upsert por (platform_order_id, platform_type)."""

    STORED = "stored"
    UPDATED = "updated"
    SKIPPED = "skipped"


class IOrderRepository(Protocol):
    """Protocol for canonical order persistence."""

    async def upsert(self, order: CanonicalOrder) -> UpsertOutcome:
        """Store, update or skip an order keyed by (platform order id, platform)."""
        ...

    async def get(self, platform: PlatformType, platform_order_id: str) -> CanonicalOrder | None:
        """Fetch one order by its upsert key."""
        ...

    async def list_orders(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        platforms: list[PlatformType] | None = None,
    ) -> list[CanonicalOrder]:
        """List orders whose order date falls in the window."""
        ...


class IPlatformConfigRepository(Protocol):
    """Protocol for PlatformConfig persistence."""

    async def get(self, platform: PlatformType) -> PlatformConfig | None:
        ...

    async def save(self, config: PlatformConfig) -> PlatformConfig:
        ...

    async def list_all(self) -> list[PlatformConfig]:
        ...

    async def list_active(self) -> list[PlatformConfig]:
        ...

    async def update_sync_status(
        self,
        platform: PlatformType,
        status: PlatformSyncStatus,
        error_message: str | None = None,
        attempted_at: datetime | None = None,
    ) -> PlatformConfig | None:
        ...
