"""
Platform configuration domain model.

One record per platform: encrypted credentials, sync interval and the
bookkeeping SyncManager keeps about past sync cycles.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from marketsync.domain.models.order import PlatformType

MIN_SYNC_INTERVAL_SECONDS = 60
MAX_SYNC_INTERVAL_SECONDS = 86400


class PlatformSyncStatus(str, Enum):
    """Estado de sincronización de una plataforma."""

    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PlatformConfig:
    """
    Domain model for a configured platform.

    Attributes:
        platform_type: Platform identifier
        encrypted_credentials: Fernet token with the credential bundle
        sync_interval: Seconds between scheduled syncs (60 to 86400)
        is_active: Inactive platforms are skipped by aggregation and scheduling
        last_sync: Last successful sync
        last_sync_attempt: Last sync attempt, successful or not
        sync_status: Status of the latest sync
        sync_error_message: Error retained for operators after a failure
        sync_metadata: last_sync_results and the capped sync_history
    """

    platform_type: PlatformType
    encrypted_credentials: str | None = None
    sync_interval: int = 3600
    is_active: bool = True
    last_sync: datetime | None = None
    last_sync_attempt: datetime | None = None
    sync_status: PlatformSyncStatus = PlatformSyncStatus.IDLE
    sync_error_message: str | None = None
    sync_metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self.platform_type = PlatformType.parse(self.platform_type)
        if not MIN_SYNC_INTERVAL_SECONDS <= int(self.sync_interval) <= MAX_SYNC_INTERVAL_SECONDS:
            raise ValueError(
                f"sync_interval must be between {MIN_SYNC_INTERVAL_SECONDS} and "
                f"{MAX_SYNC_INTERVAL_SECONDS} seconds: {self.sync_interval}"
            )
        self.sync_interval = int(self.sync_interval)

    @property
    def has_credentials(self) -> bool:
        return bool(self.encrypted_credentials)

    @property
    def next_sync_at(self) -> datetime | None:
        """Next due time, None when the platform has never synced."""
        if self.last_sync is None:
            return None
        return self.last_sync + timedelta(seconds=self.sync_interval)

    def is_sync_due(self, now: datetime | None = None) -> bool:
        next_sync = self.next_sync_at
        return next_sync is None or next_sync <= (now or datetime.now(UTC))

    @property
    def sync_history(self) -> list[dict[str, Any]]:
        return list(self.sync_metadata.get("sync_history", []))

    def record_sync_result(self, result: dict[str, Any], history_limit: int = 10) -> None:
        """
        Store the latest result and append it to the bounded history.

        Args:
            result: Serializable summary of the sync cycle
            history_limit: Maximum number of history entries kept
        """
        history = self.sync_history
        history.append(result)
        self.sync_metadata = {
            **self.sync_metadata,
            "last_sync_results": result,
            "sync_history": history[-history_limit:],
        }

    def to_dict(self) -> dict[str, Any]:
        """Public view, never includes the credential bundle."""
        return {
            "platform_type": self.platform_type.value,
            "has_credentials": self.has_credentials,
            "sync_interval": self.sync_interval,
            "is_active": self.is_active,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "last_sync_attempt": self.last_sync_attempt.isoformat() if self.last_sync_attempt else None,
            "next_sync_at": self.next_sync_at.isoformat() if self.next_sync_at else None,
            "sync_status": self.sync_status.value,
            "sync_error_message": self.sync_error_message,
            "sync_metadata": self.sync_metadata,
        }
