"""
Canonical order domain model.

Every connector's raw payload is normalized into this shape before
deduplication, conflict resolution and persistence.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from marketsync.domain.value_objects.money import Money


class PlatformType(str, Enum):
    """Plataformas de e-commerce soportadas."""

    SHOPEE = "shopee"
    LAZADA = "lazada"
    SHOPIFY = "shopify"
    TIKTOK = "tiktok"

    @property
    def priority(self) -> int:
        """Mayor prioridad gana al elegir el pedido primario entre plataformas."""
        return _PLATFORM_PRIORITY[self]

    @classmethod
    def parse(cls, value: "PlatformType | str") -> "PlatformType":
        """Convierte un string (sin distinguir mayúsculas) en PlatformType."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unsupported platform: {value}") from None


_PLATFORM_PRIORITY = {
    PlatformType.SHOPIFY: 4,
    PlatformType.LAZADA: 3,
    PlatformType.SHOPEE: 2,
    PlatformType.TIKTOK: 1,
}


class OrderStatus(str, Enum):
    """Estados canónicos del ciclo de vida de un pedido."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def rank(self) -> int:
        """Rango en la jerarquía del ciclo de vida (mayor = más avanzado)."""
        return _STATUS_RANK[self]


_STATUS_RANK = {
    OrderStatus.PENDING: 1,
    OrderStatus.CONFIRMED: 2,
    OrderStatus.PROCESSING: 3,
    OrderStatus.SHIPPED: 4,
    OrderStatus.DELIVERED: 5,
    OrderStatus.CANCELLED: 6,
    OrderStatus.REFUNDED: 7,
}


class SyncStatus(str, Enum):
    """Estado de deduplicación de un pedido."""

    SYNCED = "synced"
    DUPLICATE = "duplicate"
    PENDING_REVIEW = "pending_review"


@dataclass
class CanonicalOrder:
    """
    Unified, platform-agnostic order.

    Attributes:
        platform_order_id: Order id on the source platform
        platform_type: Source platform
        customer_name: Buyer display name
        customer_email: Buyer email ("" when the platform hides it)
        customer_phone: Buyer phone as delivered by the platform
        total_amount: Order total, non-negative, 2 decimals
        currency: ISO 4217 code
        status: Canonical lifecycle status
        order_date: Order creation time (timezone-aware UTC)
        shipping_address: Display string of the shipping address
        billing_address: Display string of the billing address
        raw_data: Original platform payload kept for audit
        notes: Free text (dedup back-references are appended here)
        sync_status: Dedup status (synced, duplicate, pending_review)
        workflow_status: Initial state for the downstream workflow
    """

    platform_order_id: str
    platform_type: PlatformType
    customer_name: str
    total_amount: Decimal
    currency: str
    status: OrderStatus
    order_date: datetime
    customer_email: str = ""
    customer_phone: str = ""
    shipping_address: str = ""
    billing_address: str = ""
    raw_data: dict[str, Any] = field(default_factory=dict)
    notes: str = ""
    sync_status: SyncStatus = SyncStatus.SYNCED
    workflow_status: str = "new"

    def __post_init__(self) -> None:
        """Coerce amount, currency and timestamp into canonical form."""
        if not isinstance(self.total_amount, Decimal):
            self.total_amount = Decimal(str(self.total_amount))
        self.total_amount = self.total_amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        self.currency = (self.currency or "").upper()
        self.platform_order_id = str(self.platform_order_id)
        if self.order_date.tzinfo is None:
            self.order_date = self.order_date.replace(tzinfo=UTC)
        else:
            self.order_date = self.order_date.astimezone(UTC)

    @property
    def key(self) -> tuple[str, str]:
        """Upsert key: (platform order id, platform)."""
        return (self.platform_order_id, self.platform_type.value)

    @property
    def total(self) -> Money:
        return Money(amount=self.total_amount, currency=self.currency)

    @property
    def is_duplicate(self) -> bool:
        return self.sync_status == SyncStatus.DUPLICATE

    @property
    def is_dedup_candidate(self) -> bool:
        """Only orders not already marked can form new duplicate groups."""
        return self.sync_status == SyncStatus.SYNCED

    def append_note(self, note: str) -> None:
        """Append a line to notes without discarding existing text."""
        if note in self.notes:
            return
        self.notes = f"{self.notes}\n{note}" if self.notes else note

    def to_dict(self) -> dict[str, Any]:
        """Convert order to dictionary for persistence."""
        return {
            "platform_order_id": self.platform_order_id,
            "platform_type": self.platform_type.value,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "total_amount": str(self.total_amount),
            "currency": self.currency,
            "status": self.status.value,
            "order_date": self.order_date.isoformat(),
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "raw_data": self.raw_data,
            "notes": self.notes,
            "sync_status": self.sync_status.value,
            "workflow_status": self.workflow_status,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CanonicalOrder":
        """Create order from dictionary."""
        return cls(
            platform_order_id=data["platform_order_id"],
            platform_type=PlatformType.parse(data["platform_type"]),
            customer_name=data["customer_name"],
            customer_email=data.get("customer_email", ""),
            customer_phone=data.get("customer_phone", ""),
            total_amount=Decimal(str(data["total_amount"])),
            currency=data["currency"],
            status=OrderStatus(data["status"]),
            order_date=datetime.fromisoformat(data["order_date"]),
            shipping_address=data.get("shipping_address", ""),
            billing_address=data.get("billing_address", ""),
            raw_data=data.get("raw_data") or {},
            notes=data.get("notes", ""),
            sync_status=SyncStatus(data.get("sync_status", SyncStatus.SYNCED.value)),
            workflow_status=data.get("workflow_status", "new"),
        )
