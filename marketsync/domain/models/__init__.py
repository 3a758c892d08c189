"""
Domain models for business entities.

These models represent core business concepts and contain
business logic and invariants.
"""

from .conflict import (
    ConflictRecord,
    ConflictSeverity,
    ConflictType,
    ResolutionAction,
    ResolutionResult,
)
from .credentials import CREDENTIAL_MODELS, BaseCredentials, PlatformCredentials, parse_credentials
from .order import CanonicalOrder, OrderStatus, PlatformType, SyncStatus
from .platform_config import PlatformConfig, PlatformSyncStatus

__all__ = [
    "CanonicalOrder",
    "OrderStatus",
    "PlatformType",
    "SyncStatus",
    "PlatformConfig",
    "PlatformSyncStatus",
    "ConflictRecord",
    "ConflictSeverity",
    "ConflictType",
    "ResolutionAction",
    "ResolutionResult",
    "BaseCredentials",
    "PlatformCredentials",
    "CREDENTIAL_MODELS",
    "parse_credentials",
]
