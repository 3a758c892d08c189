"""Fixtures compartidos de la suite de tests."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from cryptography.fernet import Fernet

from marketsync.core.cache_manager import MemoryCache
from marketsync.core.config import Settings
from marketsync.domain.models import CanonicalOrder, OrderStatus, PlatformType

TEST_ENCRYPTION_KEY = Fernet.generate_key().decode()


class FakeClock:
    """Reloj manual para tests que dependen del tiempo."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_order(
    order_id: str = "A1",
    platform: PlatformType = PlatformType.SHOPIFY,
    email: str = "x@y.com",
    amount: str = "50.00",
    order_date: datetime = datetime(2024, 5, 1, 10, 0, tzinfo=UTC),
    **overrides,
) -> CanonicalOrder:
    """Construye un pedido canónico con valores por defecto razonables."""
    fields = {
        "platform_order_id": order_id,
        "platform_type": platform,
        "customer_name": "Ana Tan",
        "customer_email": email,
        "customer_phone": "",
        "total_amount": Decimal(amount),
        "currency": "USD",
        "status": OrderStatus.CONFIRMED,
        "order_date": order_date,
    }
    fields.update(overrides)
    return CanonicalOrder(**fields)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        ENVIRONMENT="testing",
        SECRET_KEY="test-secret",
        CREDENTIAL_ENCRYPTION_KEY=TEST_ENCRYPTION_KEY,
        REDIS_URL=None,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def make_order():
    return build_order
