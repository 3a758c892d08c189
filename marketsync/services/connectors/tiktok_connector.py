"""
TikTok Shop Partner API (202309) connector.

The signature is HMAC-SHA256 with the app secret over
app_secret + path + sorted(key+value params) + body + app_secret.
Order search is a POST paged with page_token.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from marketsync.domain.models import BaseCredentials, OrderStatus, PlatformType
from marketsync.domain.models.credentials import TikTokCredentials
from marketsync.services.connectors.base_connector import BasePlatformConnector, PreparedRequest

logger = logging.getLogger(__name__)

PAGE_SIZE = 50


class TikTokConnector(BasePlatformConnector):
    """Connector for a TikTok Shop seller."""

    platform = PlatformType.TIKTOK
    STATUS_UPDATE_MAP = {
        OrderStatus.SHIPPED: "/fulfillment/202309/packages/ship",
        OrderStatus.CANCELLED: "/return_refund/202309/cancellations",
    }

    def _base_url(self, credentials: BaseCredentials) -> str:
        return self.settings.get_base_url(self.platform)

    def sign(self, credentials: TikTokCredentials, path: str, params: Dict[str, Any], body: str = "") -> str:
        secret = credentials.app_secret.get_secret_value()
        concatenated = "".join(f"{key}{params[key]}" for key in sorted(params) if key not in ("sign", "access_token"))
        return self._hmac_sha256_hex(secret, f"{secret}{path}{concatenated}{body}{secret}")

    def _prepare_request(self, method, path, params, body, credentials: TikTokCredentials) -> PreparedRequest:
        url, params, headers, data = super()._prepare_request(method, path, params, body, credentials)
        params["app_key"] = credentials.app_key
        params["timestamp"] = int(time.time())
        if credentials.shop_cipher:
            params["shop_cipher"] = credentials.shop_cipher
        params["sign"] = self.sign(credentials, path, params, data or "")
        headers["x-tts-access-token"] = credentials.access_token.get_secret_value()
        return url, params, headers, data

    def _check_envelope(self, data: Dict[str, Any], path: str) -> None:
        if data.get("code", 0) != 0:
            self._raise_platform_error(path, data.get("code"), data.get("message"))

    async def _verify_credentials(self) -> None:
        data = await self._request("GET", "/authorization/202309/shops")
        shops = (data.get("data") or {}).get("shops") or []
        logger.debug(f"TikTok authorization verified for {len(shops)} shop(s)")

    async def fetch_orders(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Fetch orders created since the given timestamp.

        Args:
            since: Lower bound on create_time (all orders when omitted)

        Returns:
            List: Raw TikTok order payloads
        """
        body: Dict[str, Any] = {}
        if since:
            body["create_time_ge"] = int(since.timestamp())

        orders: List[Dict[str, Any]] = []
        page_token = ""
        while len(orders) < self.max_orders:
            params: Dict[str, Any] = {"page_size": PAGE_SIZE, "sort_field": "create_time", "sort_order": "ASC"}
            if page_token:
                params["page_token"] = page_token

            data = await self._request("POST", "/order/202309/orders/search", params, body)
            payload = data.get("data") or {}
            orders.extend(payload.get("orders") or [])

            page_token = payload.get("next_page_token") or ""
            if not page_token:
                break

        logger.info(f"Fetched {min(len(orders), self.max_orders)} orders from TikTok")
        return orders[: self.max_orders]

    async def _push_status(self, external_id: str, status: OrderStatus) -> None:
        path = self.STATUS_UPDATE_MAP[status]
        if status == OrderStatus.SHIPPED:
            body: Dict[str, Any] = {"order_id": external_id, "handover_method": "PICKUP"}
        else:
            body = {"order_id": external_id, "cancel_reason": "seller_cancel"}
        await self._request("POST", path, body=body)
