"""
Persistence layer for the reconciliation core.

- interfaces: protocols implemented by the persistence collaborator
- InMemoryOrderRepository: upsert-by-key order store
- InMemoryPlatformConfigRepository: per-platform configuration store
"""

from marketsync.db.interfaces import IOrderRepository, IPlatformConfigRepository, UpsertOutcome
from marketsync.db.order_repository import InMemoryOrderRepository, has_order_changed
from marketsync.db.platform_config_repository import InMemoryPlatformConfigRepository

__all__ = [
    "IOrderRepository",
    "IPlatformConfigRepository",
    "UpsertOutcome",
    "InMemoryOrderRepository",
    "InMemoryPlatformConfigRepository",
    "has_order_changed",
]
