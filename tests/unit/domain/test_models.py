"""Tests unitarios para los modelos de dominio."""

from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from marketsync.domain.models import (
    CanonicalOrder,
    OrderStatus,
    PlatformConfig,
    PlatformType,
    SyncStatus,
    parse_credentials,
)
from marketsync.domain.value_objects.money import Money


class TestPlatformAndStatus:
    """Tests para PlatformType y OrderStatus."""

    def test_platform_priority_order(self):
        """Shopify > Lazada > Shopee > TikTok."""
        ordered = sorted(PlatformType, key=lambda p: p.priority, reverse=True)

        assert ordered == [PlatformType.SHOPIFY, PlatformType.LAZADA, PlatformType.SHOPEE, PlatformType.TIKTOK]

    def test_parse_is_case_insensitive(self):
        """Debe aceptar nombres en cualquier capitalización."""
        assert PlatformType.parse(" Shopee ") == PlatformType.SHOPEE

    def test_parse_rejects_unknown_platform(self):
        """Debe rechazar plataformas desconocidas."""
        with pytest.raises(ValueError):
            PlatformType.parse("amazon")

    def test_status_rank_increases_along_lifecycle(self):
        """El rango debe crecer de pending a refunded."""
        ranks = [s.rank for s in OrderStatus]

        assert ranks == sorted(ranks)
        assert OrderStatus.PENDING.rank == 1
        assert OrderStatus.REFUNDED.rank == 7


class TestCanonicalOrder:
    """Tests para CanonicalOrder."""

    def test_amount_currency_and_date_are_canonicalized(self, make_order):
        """Debe cuantizar el monto, poner la moneda en mayúsculas y pasar la fecha a UTC."""
        local = datetime(2024, 5, 1, 18, 0, tzinfo=timezone(timedelta(hours=8)))

        order = make_order(amount="10.005", currency="myr", order_date=local)

        assert order.total_amount == Decimal("10.01")
        assert order.currency == "MYR"
        assert order.order_date == datetime(2024, 5, 1, 10, 0, tzinfo=UTC)
        assert order.total == Money(Decimal("10.01"), "MYR")

    def test_naive_date_is_treated_as_utc(self, make_order):
        """Una fecha sin zona horaria se asume UTC."""
        order = make_order(order_date=datetime(2024, 5, 1, 10, 0))

        assert order.order_date.tzinfo == UTC

    def test_append_note_keeps_existing_text(self, make_order):
        """append_note no debe descartar notas previas ni duplicarlas."""
        order = make_order(notes="gift wrap")

        order.append_note("Duplicate of order: A1 (shopify)")
        order.append_note("Duplicate of order: A1 (shopify)")

        assert order.notes == "gift wrap\nDuplicate of order: A1 (shopify)"

    def test_dict_round_trip(self, make_order):
        """to_dict/from_dict deben conservar todos los campos."""
        order = make_order(sync_status=SyncStatus.PENDING_REVIEW, raw_data={"id": 1})

        assert CanonicalOrder.from_dict(order.to_dict()) == order

    def test_only_synced_orders_are_candidates(self, make_order):
        """Solo los pedidos synced participan en nuevos grupos de duplicados."""
        assert make_order().is_dedup_candidate is True
        assert make_order(sync_status=SyncStatus.DUPLICATE).is_dedup_candidate is False
        assert make_order(sync_status=SyncStatus.PENDING_REVIEW).is_dedup_candidate is False


class TestPlatformConfig:
    """Tests para PlatformConfig."""

    def test_sync_interval_bounds(self):
        """Debe rechazar intervalos fuera de 60..86400 segundos."""
        with pytest.raises(ValueError):
            PlatformConfig(platform_type=PlatformType.SHOPEE, sync_interval=59)
        with pytest.raises(ValueError):
            PlatformConfig(platform_type=PlatformType.SHOPEE, sync_interval=86401)

    def test_never_synced_platform_is_due(self):
        """Una plataforma nunca sincronizada está vencida."""
        config = PlatformConfig(platform_type="lazada")

        assert config.platform_type == PlatformType.LAZADA
        assert config.next_sync_at is None
        assert config.is_sync_due() is True

    def test_due_time_is_last_sync_plus_interval(self):
        """next_sync_at debe ser last_sync + sync_interval."""
        last_sync = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)
        config = PlatformConfig(platform_type=PlatformType.SHOPIFY, sync_interval=600, last_sync=last_sync)

        assert config.next_sync_at == last_sync + timedelta(minutes=10)
        assert config.is_sync_due(last_sync + timedelta(minutes=9)) is False
        assert config.is_sync_due(last_sync + timedelta(minutes=10)) is True

    def test_history_is_capped(self):
        """El historial debe quedarse con las últimas N entradas."""
        config = PlatformConfig(platform_type=PlatformType.TIKTOK)

        for i in range(15):
            config.record_sync_result({"run": i}, history_limit=10)

        assert len(config.sync_history) == 10
        assert config.sync_history[0] == {"run": 5}
        assert config.sync_metadata["last_sync_results"] == {"run": 14}

    def test_to_dict_never_exposes_credentials(self):
        """La vista pública no debe incluir el token cifrado."""
        config = PlatformConfig(platform_type=PlatformType.SHOPEE, encrypted_credentials="gAAAA-token")

        data = config.to_dict()

        assert data["has_credentials"] is True
        assert "gAAAA-token" not in str(data)


class TestCredentials:
    """Tests para las credenciales tipadas."""

    def test_shopify_domain_is_normalized(self):
        """Debe aceptar el dominio con esquema y normalizarlo."""
        creds = parse_credentials(
            PlatformType.SHOPIFY,
            {"shop_domain": "https://Demo-Store.myshopify.com/", "access_token": "shpat_abc", "api_key": "k" * 32},
        )

        assert creds.shop_domain == "demo-store.myshopify.com"
        assert "shpat_abc" not in repr(creds)

    def test_shopee_requires_numeric_ids(self):
        """partner_id y shop_id de Shopee deben ser numéricos."""
        with pytest.raises(ValidationError):
            parse_credentials(PlatformType.SHOPEE, {"partner_id": "abc", "partner_key": "k" * 32, "shop_id": "1"})

    def test_lazada_country_is_validated(self):
        """Lazada solo acepta los países soportados."""
        base = {"app_key": "a" * 16, "app_secret": "s" * 32, "access_token": "t" * 32}

        assert parse_credentials(PlatformType.LAZADA, {**base, "country": "my"}).country == "MY"
        with pytest.raises(ValidationError):
            parse_credentials(PlatformType.LAZADA, {**base, "country": "US"})

    def test_unknown_fields_are_rejected(self):
        """Campos desconocidos no deben aceptarse."""
        with pytest.raises(ValidationError):
            parse_credentials(
                PlatformType.TIKTOK,
                {"app_key": "a" * 16, "app_secret": "s" * 32, "access_token": "t" * 32, "shop_id": "7", "x": 1},
            )


class TestMoney:
    """Tests para el value object Money."""

    def test_from_minor_units(self):
        """Debe convertir micro-unidades de Shopee a unidades mayores."""
        assert Money.from_minor_units(1_250_000, "MYR", divisor=100_000).amount == Decimal("12.50")

    def test_from_string_accepts_thousands_separator(self):
        """Debe aceptar separadores de miles."""
        assert Money.from_string("1,299.00", "php").amount == Decimal("1299.00")

    @pytest.mark.parametrize("amount, currency", [("-1", "USD"), ("10", "US"), ("abc", "USD")])
    def test_rejects_invalid_values(self, amount, currency):
        """Debe rechazar montos negativos, monedas inválidas y texto."""
        with pytest.raises(ValueError):
            Money.from_string(amount, currency)
