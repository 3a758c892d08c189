"""
Normalización de pedidos crudos de cada plataforma al modelo canónico.

Cada plataforma tiene su propia tabla de extracción de campos (objetos de
dirección anidados, montos en micro-unidades, timestamps unix o ISO) y
su tabla de estados. Un pedido que no puede normalizarse es un error
suave: se reporta y se excluye del lote, nunca aborta la sincronización.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Callable, Optional

from marketsync.domain.models import CanonicalOrder, OrderStatus, PlatformType
from marketsync.domain.value_objects.money import Money
from marketsync.utils.error_handler import ErrorAggregator, NormalizationException

logger = logging.getLogger(__name__)

SHOPEE_MICRO_UNITS = 100000

# === TABLAS DE ESTADOS ===

SHOPEE_STATUS_MAP = {
    "UNPAID": OrderStatus.PENDING,
    "INVOICE_PENDING": OrderStatus.PENDING,
    "READY_TO_SHIP": OrderStatus.CONFIRMED,
    "PROCESSED": OrderStatus.PROCESSING,
    "RETRY_SHIP": OrderStatus.PROCESSING,
    "SHIPPED": OrderStatus.SHIPPED,
    "TO_CONFIRM_RECEIVE": OrderStatus.SHIPPED,
    "DELIVERED": OrderStatus.DELIVERED,
    "COMPLETED": OrderStatus.DELIVERED,
    "IN_CANCEL": OrderStatus.CANCELLED,
    "CANCELLED": OrderStatus.CANCELLED,
    "TO_RETURN": OrderStatus.REFUNDED,
}

LAZADA_STATUS_MAP = {
    "unpaid": OrderStatus.PENDING,
    "pending": OrderStatus.PENDING,
    "ready_to_ship": OrderStatus.CONFIRMED,
    "packed": OrderStatus.PROCESSING,
    "repacked": OrderStatus.PROCESSING,
    "shipped": OrderStatus.SHIPPED,
    "delivered": OrderStatus.DELIVERED,
    "confirmed": OrderStatus.DELIVERED,
    "canceled": OrderStatus.CANCELLED,
    "failed": OrderStatus.CANCELLED,
    "returned": OrderStatus.REFUNDED,
    "shipped_back": OrderStatus.REFUNDED,
}

SHOPIFY_FULFILLMENT_STATUS_MAP = {
    "fulfilled": OrderStatus.DELIVERED,
    "partial": OrderStatus.PROCESSING,
    "restocked": OrderStatus.CANCELLED,
}

SHOPIFY_FINANCIAL_STATUS_MAP = {
    "pending": OrderStatus.PENDING,
    "authorized": OrderStatus.PENDING,
    "paid": OrderStatus.CONFIRMED,
    "partially_paid": OrderStatus.CONFIRMED,
    "partially_refunded": OrderStatus.CONFIRMED,
    "refunded": OrderStatus.REFUNDED,
    "voided": OrderStatus.CANCELLED,
}

TIKTOK_STATUS_MAP = {
    "UNPAID": OrderStatus.PENDING,
    "ON_HOLD": OrderStatus.PENDING,
    "AWAITING_SHIPMENT": OrderStatus.CONFIRMED,
    "PARTIALLY_SHIPPING": OrderStatus.PROCESSING,
    "AWAITING_COLLECTION": OrderStatus.PROCESSING,
    "IN_TRANSIT": OrderStatus.SHIPPED,
    "DELIVERED": OrderStatus.DELIVERED,
    "COMPLETED": OrderStatus.DELIVERED,
    "CANCELLED": OrderStatus.CANCELLED,
}

LAZADA_COUNTRY_CURRENCIES = {
    "TH": "THB",
    "THAILAND": "THB",
    "MY": "MYR",
    "MALAYSIA": "MYR",
    "SG": "SGD",
    "SINGAPORE": "SGD",
    "PH": "PHP",
    "PHILIPPINES": "PHP",
    "VN": "VND",
    "VIETNAM": "VND",
    "ID": "IDR",
    "INDONESIA": "IDR",
}


# === UTILIDADES ===


def join_address(*parts: Any) -> str:
    """Concatena las partes no vacías de una dirección con ', '."""
    return ", ".join(str(p).strip() for p in parts if p is not None and str(p).strip())


def parse_timestamp(value: Any) -> datetime:
    """
    Convierte un timestamp unix o ISO 8601 a datetime UTC.

    Raises:
        ValueError: Si el valor no es un timestamp reconocible
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        return datetime.fromtimestamp(int(value), tz=UTC)

    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        # Lazada: "2024-01-15 10:30:00 +0800"
        parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S %z")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


class OrderNormalizer:
    """
    Convierte pedidos crudos en CanonicalOrder.

    La normalización es determinística: la misma entrada produce siempre
    el mismo pedido (no se usa la hora actual como valor por defecto).
    """

    def __init__(self):
        self._extractors: dict[PlatformType, Callable[[dict[str, Any]], dict[str, Any]]] = {
            PlatformType.SHOPEE: self._extract_shopee,
            PlatformType.LAZADA: self._extract_lazada,
            PlatformType.SHOPIFY: self._extract_shopify,
            PlatformType.TIKTOK: self._extract_tiktok,
        }

    def normalize(self, raw: dict[str, Any], platform: PlatformType | str) -> CanonicalOrder:
        """
        Normaliza un pedido crudo.

        Args:
            raw: Payload original de la plataforma
            platform: Plataforma de origen

        Returns:
            CanonicalOrder: Pedido canónico validado

        Raises:
            NormalizationException: Si falta un campo requerido o es inválido
        """
        try:
            platform = PlatformType.parse(platform)
        except ValueError as e:
            raise NormalizationException(str(e), platform=str(platform), field="platform") from None

        if not isinstance(raw, dict):
            raise NormalizationException("Raw order must be an object", platform=platform.value)

        try:
            fields = self._extractors[platform](raw)
            order = self._build(fields, raw, platform)
        except (AttributeError, TypeError, KeyError, IndexError) as e:
            raise NormalizationException(
                f"Malformed {platform.value} order payload: {type(e).__name__}",
                platform=platform.value,
            ) from e
        logger.debug(f"Order {order.platform_order_id} normalized from {platform.value}")
        return order

    def batch_normalize(
        self, raws: list[dict[str, Any]], platform: PlatformType | str
    ) -> tuple[list[CanonicalOrder], ErrorAggregator]:
        """
        Normaliza un lote, aislando los errores por pedido.

        Returns:
            tuple: (pedidos normalizados, errores acumulados)
        """
        orders: list[CanonicalOrder] = []
        errors = ErrorAggregator()
        for raw in raws:
            try:
                orders.append(self.normalize(raw, platform))
            except NormalizationException as e:
                logger.warning(f"Skipping order that failed normalization: {e.message}")
                errors.add_error(e, {"platform": str(getattr(platform, "value", platform))})
            finally:
                errors.increment_processed()
        return orders, errors

    # === VALIDACIÓN Y CONSTRUCCIÓN ===

    def _build(self, fields: dict[str, Any], raw: dict[str, Any], platform: PlatformType) -> CanonicalOrder:
        order_id = _text(fields.get("platform_order_id"))
        if not order_id:
            raise NormalizationException("Missing external order id", platform=platform.value, field="platform_order_id")

        def fail(message: str, field: str) -> NormalizationException:
            return NormalizationException(message, platform=platform.value, field=field, order_id=order_id)

        customer_name = _text(fields.get("customer_name"))
        if not customer_name:
            raise fail("Missing customer name", "customer_name")

        currency = _text(fields.get("currency"))
        if not currency:
            raise fail("Missing currency", "currency")

        try:
            money: Money = fields["amount_parser"](currency)
        except (ValueError, TypeError, ArithmeticError) as e:
            raise fail(f"Invalid amount: {e}", "total_amount") from None

        if fields.get("order_date") in (None, ""):
            raise fail("Missing order timestamp", "order_date")
        try:
            order_date = parse_timestamp(fields["order_date"])
        except (ValueError, TypeError, OverflowError, OSError):
            raise fail(f"Invalid order timestamp: {fields['order_date']!r}", "order_date") from None

        return CanonicalOrder(
            platform_order_id=order_id,
            platform_type=platform,
            customer_name=customer_name,
            customer_email=_text(fields.get("customer_email")),
            customer_phone=_text(fields.get("customer_phone")),
            total_amount=money.amount,
            currency=money.currency,
            status=fields.get("status") or OrderStatus.PENDING,
            order_date=order_date,
            shipping_address=fields.get("shipping_address", ""),
            billing_address=fields.get("billing_address", ""),
            raw_data=raw,
            notes=_text(fields.get("notes")),
        )

    # === EXTRACCIÓN POR PLATAFORMA ===

    def _extract_shopee(self, raw: dict[str, Any]) -> dict[str, Any]:
        address = raw.get("recipient_address") or {}
        shipping = join_address(
            address.get("full_address") or address.get("address"),
            address.get("city"),
            address.get("state"),
            address.get("region"),
            address.get("zipcode"),
        )
        return {
            "platform_order_id": raw.get("order_sn"),
            "customer_name": address.get("name") or raw.get("buyer_username"),
            "customer_email": raw.get("buyer_email", ""),
            "customer_phone": address.get("phone"),
            "currency": raw.get("currency"),
            "amount_parser": lambda currency: Money.from_minor_units(
                raw.get("total_amount"), currency, divisor=SHOPEE_MICRO_UNITS
            ),
            "status": SHOPEE_STATUS_MAP.get(_text(raw.get("order_status")).upper()),
            "order_date": raw.get("create_time"),
            "shipping_address": shipping,
            "billing_address": shipping,
            "notes": raw.get("message_to_seller"),
        }

    def _extract_lazada(self, raw: dict[str, Any]) -> dict[str, Any]:
        shipping = raw.get("address_shipping") or {}
        billing = raw.get("address_billing") or shipping
        name = f"{_text(shipping.get('first_name'))} {_text(shipping.get('last_name'))}".strip()
        if not name:
            name = f"{_text(raw.get('customer_first_name'))} {_text(raw.get('customer_last_name'))}".strip()

        statuses = raw.get("statuses") or []
        latest = _text(statuses[-1]).lower() if statuses else ""

        currency = raw.get("currency") or LAZADA_COUNTRY_CURRENCIES.get(_text(shipping.get("country")).upper())

        return {
            "platform_order_id": raw.get("order_number") or raw.get("order_id"),
            "customer_name": name,
            "customer_email": raw.get("customer_email", ""),
            "customer_phone": shipping.get("phone"),
            "currency": currency,
            "amount_parser": lambda currency: Money.from_string(_text(raw.get("price")), currency),
            "status": LAZADA_STATUS_MAP.get(latest),
            "order_date": raw.get("created_at"),
            "shipping_address": self._lazada_address(shipping),
            "billing_address": self._lazada_address(billing),
            "notes": raw.get("remarks"),
        }

    @staticmethod
    def _lazada_address(address: dict[str, Any]) -> str:
        return join_address(
            *(address.get(f"address{i}") for i in range(1, 6)),
            address.get("city"),
            address.get("post_code"),
            address.get("country"),
        )

    def _extract_shopify(self, raw: dict[str, Any]) -> dict[str, Any]:
        customer = raw.get("customer") or {}
        shipping = raw.get("shipping_address") or {}
        billing = raw.get("billing_address") or {}

        name = f"{_text(customer.get('first_name'))} {_text(customer.get('last_name'))}".strip()
        if not name:
            name = _text(shipping.get("name")) or _text(billing.get("name"))

        order_id = raw.get("id") or raw.get("order_number") or raw.get("name")

        return {
            "platform_order_id": order_id,
            "customer_name": name,
            "customer_email": raw.get("email") or customer.get("email", ""),
            "customer_phone": raw.get("phone") or customer.get("phone") or shipping.get("phone", ""),
            "currency": raw.get("currency"),
            "amount_parser": lambda currency: Money.from_string(_text(raw.get("total_price")), currency),
            "status": self._shopify_status(raw),
            "order_date": raw.get("created_at"),
            "shipping_address": self._shopify_address(shipping),
            "billing_address": self._shopify_address(billing),
            "notes": raw.get("note"),
        }

    @staticmethod
    def _shopify_status(raw: dict[str, Any]) -> Optional[OrderStatus]:
        # cancelled_at > fulfillment_status > financial_status
        if raw.get("cancelled_at"):
            return OrderStatus.CANCELLED
        fulfillment = _text(raw.get("fulfillment_status")).lower()
        if fulfillment in SHOPIFY_FULFILLMENT_STATUS_MAP:
            return SHOPIFY_FULFILLMENT_STATUS_MAP[fulfillment]
        return SHOPIFY_FINANCIAL_STATUS_MAP.get(_text(raw.get("financial_status")).lower())

    @staticmethod
    def _shopify_address(address: dict[str, Any]) -> str:
        return join_address(
            address.get("address1"),
            address.get("address2"),
            address.get("city"),
            address.get("province"),
            address.get("country"),
            address.get("zip"),
        )

    def _extract_tiktok(self, raw: dict[str, Any]) -> dict[str, Any]:
        address = raw.get("recipient_address") or {}
        payment = raw.get("payment") or {}
        shipping = self._tiktok_address(address)

        return {
            "platform_order_id": raw.get("id") or raw.get("order_id"),
            "customer_name": address.get("name"),
            "customer_email": raw.get("buyer_email", ""),
            "customer_phone": address.get("phone_number"),
            "currency": payment.get("currency"),
            "amount_parser": lambda currency: Money.from_string(_text(payment.get("total_amount")), currency),
            "status": TIKTOK_STATUS_MAP.get(_text(raw.get("status") or raw.get("order_status")).upper()),
            "order_date": raw.get("create_time"),
            "shipping_address": shipping,
            "billing_address": shipping,
            "notes": raw.get("buyer_message"),
        }

    @staticmethod
    def _tiktok_address(address: dict[str, Any]) -> str:
        if address.get("full_address"):
            return join_address(address["full_address"], address.get("postal_code"))
        districts = [d.get("address_name") for d in address.get("district_info") or [] if isinstance(d, dict)]
        return join_address(
            *(address.get(f"address_line{i}") for i in range(1, 5)),
            *reversed(districts),
            address.get("postal_code"),
        )
