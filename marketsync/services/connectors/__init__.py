"""
Platform connectors.

One connector per marketplace behind the BasePlatformConnector interface,
built and cached by ConnectorFactory.
"""

from marketsync.services.connectors.base_connector import BasePlatformConnector
from marketsync.services.connectors.factory import ConnectorFactory, breaker_name
from marketsync.services.connectors.lazada_connector import LazadaConnector
from marketsync.services.connectors.shopee_connector import ShopeeConnector
from marketsync.services.connectors.shopify_connector import ShopifyConnector
from marketsync.services.connectors.tiktok_connector import TikTokConnector

__all__ = [
    "BasePlatformConnector",
    "ConnectorFactory",
    "LazadaConnector",
    "ShopeeConnector",
    "ShopifyConnector",
    "TikTokConnector",
    "breaker_name",
]
