"""
Lazada Open Platform connector.

Requests go to the regional REST host of the seller's country. The
signature is HMAC-SHA256 over the API path followed by every parameter
as key+value in key order, upper-case hex.
"""

import json
import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, List, Optional

from marketsync.core.config import LAZADA_REGIONAL_ENDPOINTS
from marketsync.domain.models import BaseCredentials, OrderStatus, PlatformType
from marketsync.domain.models.credentials import LazadaCredentials
from marketsync.services.connectors.base_connector import BasePlatformConnector, PreparedRequest

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class LazadaConnector(BasePlatformConnector):
    """Connector for a Lazada seller account."""

    platform = PlatformType.LAZADA
    STATUS_UPDATE_MAP = {
        OrderStatus.PROCESSING: "/order/pack",
        OrderStatus.SHIPPED: "/order/rts",
        OrderStatus.CANCELLED: "/order/cancel",
    }

    def _base_url(self, credentials: BaseCredentials) -> str:
        if credentials.country:
            return LAZADA_REGIONAL_ENDPOINTS[credentials.country]
        return self.settings.get_base_url(self.platform)

    def sign(self, credentials: LazadaCredentials, path: str, params: Dict[str, Any]) -> str:
        """Firma del request: HMAC-SHA256 en hex mayúscula."""
        concatenated = "".join(f"{key}{params[key]}" for key in sorted(params))
        return self._hmac_sha256_hex(credentials.app_secret.get_secret_value(), f"{path}{concatenated}").upper()

    def _prepare_request(self, method, path, params, body, credentials: LazadaCredentials) -> PreparedRequest:
        # Lazada recibe todos los parámetros en la query, también en POST
        params.update(body or {})
        params.update(
            {
                "app_key": credentials.app_key,
                "access_token": credentials.access_token.get_secret_value(),
                "timestamp": int(time.time() * 1000),
                "sign_method": "sha256",
            }
        )
        params["sign"] = self.sign(credentials, path, params)
        return f"{self._base_url(credentials)}{path}", params, {}, None

    def _check_envelope(self, data: Dict[str, Any], path: str) -> None:
        if str(data.get("code", "0")) != "0":
            self._raise_platform_error(path, data.get("code"), data.get("message"))

    async def _verify_credentials(self) -> None:
        data = await self._request("GET", "/seller/get")
        logger.debug(f"Lazada seller verified: {(data.get('data') or {}).get('name', 'unknown')}")

    async def fetch_orders(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Fetch orders created since the given timestamp.

        Args:
            since: Lower bound on created_at (initial lookback when omitted)

        Returns:
            List: Raw Lazada order payloads
        """
        created_after = since or datetime.now(UTC) - timedelta(days=self.settings.SYNC_INITIAL_LOOKBACK_DAYS)
        orders: List[Dict[str, Any]] = []
        offset = 0

        while len(orders) < self.max_orders:
            data = await self._request(
                "GET",
                "/orders/get",
                {
                    "created_after": created_after.isoformat(),
                    "offset": offset,
                    "limit": PAGE_SIZE,
                    "sort_by": "created_at",
                    "sort_direction": "DESC",
                },
            )
            page = (data.get("data") or {}).get("orders") or []
            orders.extend(page)

            if len(page) < PAGE_SIZE:
                break
            offset += PAGE_SIZE

        logger.info(f"Fetched {min(len(orders), self.max_orders)} orders from Lazada")
        return orders[: self.max_orders]

    async def _push_status(self, external_id: str, status: OrderStatus) -> None:
        path = self.STATUS_UPDATE_MAP[status]
        if status == OrderStatus.PROCESSING:
            params = {
                "packReq": json.dumps(
                    {"delivery_type": "dropship", "pack_order_list": [{"order_id": external_id}]}
                )
            }
        elif status == OrderStatus.SHIPPED:
            params = {"readyToShipReq": json.dumps({"packages": [{"order_id": external_id}]})}
        else:
            params = {"order_id": external_id, "reason_detail": "Cancelled by seller"}
        await self._request("POST", path, params)
