"""
Shopify Admin REST API connector.

Orders are paged with since_id (ascending ids), 250 per page. Status
pushes map to fulfillments, cancellations and order tags.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from marketsync.domain.models import BaseCredentials, OrderStatus, PlatformType
from marketsync.domain.models.credentials import ShopifyCredentials
from marketsync.services.connectors.base_connector import BasePlatformConnector, PreparedRequest

logger = logging.getLogger(__name__)

PAGE_SIZE = 250


class ShopifyConnector(BasePlatformConnector):
    """Connector for a Shopify store through a custom app access token."""

    platform = PlatformType.SHOPIFY
    STATUS_UPDATE_MAP = {
        OrderStatus.CONFIRMED: "tag",
        OrderStatus.PROCESSING: "tag",
        OrderStatus.SHIPPED: "fulfill",
        OrderStatus.DELIVERED: "fulfill",
        OrderStatus.CANCELLED: "cancel",
    }

    def _base_url(self, credentials: BaseCredentials) -> str:
        return self.settings.get_base_url(self.platform, shop_domain=credentials.shop_domain)

    def _prepare_request(self, method, path, params, body, credentials: ShopifyCredentials) -> PreparedRequest:
        url, params, headers, data = super()._prepare_request(method, path, params, body, credentials)
        headers["X-Shopify-Access-Token"] = credentials.access_token.get_secret_value()
        return url, params, headers, data

    def _check_envelope(self, data: Dict[str, Any], path: str) -> None:
        if "errors" in data:
            self._raise_platform_error(path, "errors", str(data["errors"]))

    def _encode_webhook_digest(self, digest: bytes) -> str:
        # X-Shopify-Hmac-Sha256 viaja en base64
        return self._b64(digest)

    async def _verify_credentials(self) -> None:
        data = await self._request("GET", "/shop.json")
        shop = data.get("shop") or {}
        logger.debug(f"Shopify shop verified: {shop.get('myshopify_domain', shop.get('name', 'unknown'))}")

    async def fetch_orders(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Fetch orders created since the given timestamp.

        Args:
            since: Lower bound on created_at (all orders when omitted)

        Returns:
            List: Raw Shopify order payloads
        """
        orders: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"limit": PAGE_SIZE, "status": "any", "since_id": 0}
        if since:
            params["created_at_min"] = since.isoformat()

        while len(orders) < self.max_orders:
            data = await self._request("GET", "/orders.json", params)
            page = data.get("orders") or []
            orders.extend(page)
            logger.debug(f"Fetched {len(page)} Shopify orders (since_id={params['since_id']})")

            if len(page) < PAGE_SIZE:
                break
            params["since_id"] = page[-1]["id"]

        logger.info(f"Fetched {min(len(orders), self.max_orders)} orders from Shopify")
        return orders[: self.max_orders]

    async def _push_status(self, external_id: str, status: OrderStatus) -> None:
        action = self.STATUS_UPDATE_MAP[status]
        if action == "fulfill":
            fulfillment: Dict[str, Any] = {"notify_customer": False}
            if self.credentials and self.credentials.location_id:
                fulfillment["location_id"] = self.credentials.location_id
            await self._request("POST", f"/orders/{external_id}/fulfillments.json", body={"fulfillment": fulfillment})
        elif action == "cancel":
            await self._request("POST", f"/orders/{external_id}/cancel.json", body={})
        else:
            await self._request(
                "PUT",
                f"/orders/{external_id}.json",
                body={"order": {"id": external_id, "tags": f"marketsync:{status.value}"}},
            )
