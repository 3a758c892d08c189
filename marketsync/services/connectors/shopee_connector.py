"""
Shopee Open Platform v2 connector.

Every request is signed with HMAC-SHA256 over
partner_id + path + timestamp (+ access_token) + shop_id using the partner
key. The order list only returns order_sn values and accepts time ranges
of at most 15 days, so longer windows are walked in chunks and each page
is expanded through get_order_detail.
"""

import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, List, Optional

from marketsync.domain.models import BaseCredentials, OrderStatus, PlatformType
from marketsync.domain.models.credentials import ShopeeCredentials
from marketsync.services.connectors.base_connector import BasePlatformConnector, PreparedRequest

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
DETAIL_BATCH_SIZE = 50
MAX_WINDOW = timedelta(days=15)

DETAIL_FIELDS = ",".join(
    [
        "buyer_username",
        "buyer_email",
        "recipient_address",
        "total_amount",
        "currency",
        "order_status",
        "create_time",
        "message_to_seller",
        "item_list",
    ]
)


class ShopeeConnector(BasePlatformConnector):
    """Connector for a Shopee shop."""

    platform = PlatformType.SHOPEE
    STATUS_UPDATE_MAP = {
        OrderStatus.PROCESSING: "ship_order",
        OrderStatus.CANCELLED: "cancel_order",
    }

    def _base_url(self, credentials: BaseCredentials) -> str:
        return self.settings.get_base_url(self.platform)

    def sign(self, credentials: ShopeeCredentials, path: str, timestamp: int) -> str:
        """Firma HMAC-SHA256 (hex) de un request de nivel tienda."""
        access_token = credentials.access_token.get_secret_value() if credentials.access_token else ""
        base_string = f"{credentials.partner_id}{path}{timestamp}{access_token}{credentials.shop_id}"
        return self._hmac_sha256_hex(credentials.partner_key.get_secret_value(), base_string)

    def _prepare_request(self, method, path, params, body, credentials: ShopeeCredentials) -> PreparedRequest:
        url, params, headers, data = super()._prepare_request(method, path, params, body, credentials)
        timestamp = int(time.time())
        params.update(
            {
                "partner_id": credentials.partner_id,
                "shop_id": credentials.shop_id,
                "timestamp": timestamp,
                "sign": self.sign(credentials, path, timestamp),
            }
        )
        if credentials.access_token:
            params["access_token"] = credentials.access_token.get_secret_value()
        return url, params, headers, data

    def _check_envelope(self, data: Dict[str, Any], path: str) -> None:
        if data.get("error"):
            self._raise_platform_error(path, data["error"], data.get("message"))

    async def _verify_credentials(self) -> None:
        data = await self._request("GET", "/api/v2/shop/get_shop_info")
        logger.debug(f"Shopee shop verified: {data.get('shop_name', 'unknown')}")

    async def fetch_orders(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Fetch orders created since the given timestamp.

        Args:
            since: Lower bound on create_time (last 15 days when omitted)

        Returns:
            List: Raw Shopee order details
        """
        now = datetime.now(UTC)
        window_start = since or (now - MAX_WINDOW)
        orders: List[Dict[str, Any]] = []

        while window_start < now and len(orders) < self.max_orders:
            window_end = min(window_start + MAX_WINDOW, now)
            await self._fetch_window(window_start, window_end, orders)
            window_start = window_end

        logger.info(f"Fetched {min(len(orders), self.max_orders)} orders from Shopee")
        return orders[: self.max_orders]

    async def _fetch_window(self, start: datetime, end: datetime, orders: List[Dict[str, Any]]) -> None:
        cursor = ""
        while len(orders) < self.max_orders:
            data = await self._request(
                "GET",
                "/api/v2/order/get_order_list",
                {
                    "time_range_field": "create_time",
                    "time_from": int(start.timestamp()),
                    "time_to": int(end.timestamp()),
                    "page_size": PAGE_SIZE,
                    "cursor": cursor,
                },
            )
            response = data.get("response") or {}
            order_sns = [o["order_sn"] for o in response.get("order_list") or [] if o.get("order_sn")]
            orders.extend(await self._fetch_details(order_sns))

            cursor = response.get("next_cursor") or ""
            if not response.get("more") or not cursor:
                break

    async def _fetch_details(self, order_sns: List[str]) -> List[Dict[str, Any]]:
        details: List[Dict[str, Any]] = []
        for i in range(0, len(order_sns), DETAIL_BATCH_SIZE):
            batch = order_sns[i : i + DETAIL_BATCH_SIZE]
            data = await self._request(
                "GET",
                "/api/v2/order/get_order_detail",
                {"order_sn_list": ",".join(batch), "response_optional_fields": DETAIL_FIELDS},
            )
            details.extend((data.get("response") or {}).get("order_list") or [])
        return details

    async def _push_status(self, external_id: str, status: OrderStatus) -> None:
        if self.STATUS_UPDATE_MAP[status] == "ship_order":
            pickup: Dict[str, Any] = {}
            if self.credentials and self.credentials.pickup_address_id:
                pickup["address_id"] = int(self.credentials.pickup_address_id)
            if self.credentials and self.credentials.pickup_time_id:
                pickup["pickup_time_id"] = self.credentials.pickup_time_id
            await self._request("POST", "/api/v2/logistics/ship_order", body={"order_sn": external_id, "pickup": pickup})
        else:
            await self._request(
                "POST",
                "/api/v2/order/cancel_order",
                body={"order_sn": external_id, "cancel_reason": "OUT_OF_STOCK"},
            )
