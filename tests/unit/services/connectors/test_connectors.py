"""Tests unitarios para los conectores de plataformas."""

import base64
import hashlib
import hmac
import json
import socket
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from marketsync.core.cache_manager import MemoryCache
from marketsync.domain.models import OrderStatus
from marketsync.domain.models.credentials import (
    LazadaCredentials,
    ShopeeCredentials,
    ShopifyCredentials,
    TikTokCredentials,
)
from marketsync.services.connectors import LazadaConnector, ShopeeConnector, ShopifyConnector, TikTokConnector
from marketsync.utils.circuit_breaker import CircuitBreakerRegistry
from marketsync.utils.error_handler import CircuitOpenException, PlatformAPIException, SsrfRejectedException
from marketsync.utils.rate_limiter import SlidingWindowRateLimiter
from marketsync.utils.ssrf_guard import SsrfGuard

SHOPIFY_CREDS = ShopifyCredentials(
    shop_domain="demo.myshopify.com", access_token="shpat_" + "a" * 32, api_key="k" * 32
)
SHOPEE_CREDS = ShopeeCredentials(partner_id="1001", partner_key="p" * 32, shop_id="2002", access_token="tok")
LAZADA_CREDS = LazadaCredentials(app_key="lazada-app-key-01", app_secret="s" * 32, access_token="t" * 32)
TIKTOK_CREDS = TikTokCredentials(app_key="tiktok-app-key-01", app_secret="s" * 32, access_token="t" * 32, shop_id="77")


def public_resolver(host, port, proto=0):
    return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("93.184.216.34", port))]


@pytest.fixture
def build_connector(settings):
    """Construye un conector con dependencias reales en memoria."""

    def _build(connector_class, credentials=None):
        credential_store = MagicMock()
        credential_store.get = AsyncMock(return_value=credentials)
        credential_store.validate = MagicMock(side_effect=lambda platform, data: credentials)
        breakers = CircuitBreakerRegistry(cache=MemoryCache(), settings=settings)
        return connector_class(
            credential_store=credential_store,
            circuit_breaker=breakers.get(f"platform_{connector_class.platform.value}"),
            rate_limiter=SlidingWindowRateLimiter(),
            ssrf_guard=SsrfGuard(resolver=public_resolver),
            settings=settings,
        )

    return _build


class FakeResponse:
    def __init__(self, status=200, payload=None, text="", json_error=None):
        self.status = status
        self._payload = payload
        self._text = text
        self._json_error = json_error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        return self._text

    async def json(self, content_type=None):
        if self._json_error:
            raise self._json_error
        return self._payload


class FakeSession:
    closed = False

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response

    async def close(self):
        self.closed = True


class TestSignatures:
    """Tests para la firma de requests por plataforma."""

    def test_shopee_signature(self, build_connector):
        """HMAC-SHA256 hex de partner_id + path + timestamp + token + shop_id."""
        connector = build_connector(ShopeeConnector)
        expected = hmac.new(
            b"p" * 32, b"1001/api/v2/order/get_order_list1700000000tok2002", hashlib.sha256
        ).hexdigest()

        assert connector.sign(SHOPEE_CREDS, "/api/v2/order/get_order_list", 1700000000) == expected

    def test_lazada_signature_is_sorted_and_uppercase(self, build_connector):
        connector = build_connector(LazadaConnector)
        expected = hmac.new(b"s" * 32, b"/orders/getapp_keyabctimestamp1", hashlib.sha256).hexdigest().upper()

        assert connector.sign(LAZADA_CREDS, "/orders/get", {"timestamp": 1, "app_key": "abc"}) == expected

    def test_tiktok_signature_wraps_with_secret_and_skips_token(self, build_connector):
        """No debe firmar sign ni access_token; incluye el body."""
        connector = build_connector(TikTokConnector)
        secret = "s" * 32
        message = f"{secret}/order/202309/orders/searchapp_keyktimestamp5{{}}{secret}"
        expected = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()

        params = {"timestamp": 5, "app_key": "k", "sign": "old", "access_token": "x"}
        assert connector.sign(TIKTOK_CREDS, "/order/202309/orders/search", params, "{}") == expected


class TestWebhookSignatures:
    """Tests para la verificación de webhooks."""

    def test_shopify_uses_base64_digest(self, build_connector):
        connector = build_connector(ShopifyConnector)
        payload = b'{"id": 1}'
        signature = base64.b64encode(hmac.new(b"whsec", payload, hashlib.sha256).digest()).decode()

        assert connector.verify_webhook_signature(payload, signature, "whsec") is True
        assert connector.verify_webhook_signature(payload + b" ", signature, "whsec") is False

    def test_other_platforms_use_hex_digest(self, build_connector):
        connector = build_connector(LazadaConnector)
        payload = '{"order_id": 9}'
        signature = hmac.new(b"whsec", payload.encode(), hashlib.sha256).hexdigest()

        assert connector.verify_webhook_signature(payload, signature, "whsec") is True

    def test_missing_secret_is_rejected(self, build_connector):
        connector = build_connector(TikTokConnector)

        assert connector.verify_webhook_signature(b"{}", "abc", "") is False


class TestAuthenticate:
    """Tests para authenticate (nunca lanza)."""

    @pytest.mark.asyncio
    async def test_success_with_stored_credentials(self, build_connector):
        connector = build_connector(ShopifyConnector, SHOPIFY_CREDS)

        with patch.object(connector, "_request", AsyncMock(return_value={"shop": {"name": "Demo"}})) as request:
            assert await connector.authenticate() is True

        request.assert_awaited_once_with("GET", "/shop.json")

    @pytest.mark.asyncio
    async def test_missing_credentials_return_false(self, build_connector):
        connector = build_connector(ShopeeConnector, None)

        assert await connector.authenticate() is False

    @pytest.mark.asyncio
    async def test_platform_rejection_returns_false(self, build_connector):
        connector = build_connector(LazadaConnector, LAZADA_CREDS)
        error = PlatformAPIException("bad token", platform="lazada", api_response_code=401)

        with patch.object(connector, "_request", AsyncMock(side_effect=error)):
            assert await connector.authenticate() is False

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_false(self, build_connector):
        connector = build_connector(TikTokConnector, TIKTOK_CREDS)

        with patch.object(connector, "_request", AsyncMock(side_effect=RuntimeError("boom"))):
            assert await connector.authenticate() is False

    @pytest.mark.asyncio
    async def test_explicit_credentials_are_validated(self, build_connector):
        connector = build_connector(ShopifyConnector, SHOPIFY_CREDS)

        with patch.object(connector, "_request", AsyncMock(return_value={"shop": {}})):
            assert await connector.authenticate({"shop_domain": "demo.myshopify.com"}) is True

        connector.credential_store.validate.assert_called_once()

    @pytest.mark.asyncio
    async def test_rejected_credentials_do_not_replace_working_ones(self, build_connector):
        """Si la plataforma rechaza las nuevas credenciales, deben quedar las anteriores."""
        connector = build_connector(LazadaConnector, LAZADA_CREDS)
        rejected = LazadaCredentials(app_key="lazada-app-key-02", app_secret="x" * 32, access_token="y" * 32)
        error = PlatformAPIException("bad token", platform="lazada", api_response_code=401)

        with patch.object(connector, "_request", AsyncMock(return_value={"data": {}})):
            assert await connector.authenticate() is True
        with patch.object(connector, "_request", AsyncMock(side_effect=error)):
            assert await connector.authenticate(rejected) is False

        assert connector.credentials is LAZADA_CREDS


class TestUpdateOrderStatus:
    """Tests para update_order_status."""

    @pytest.mark.asyncio
    async def test_unknown_status_returns_false(self, build_connector):
        connector = build_connector(ShopifyConnector, SHOPIFY_CREDS)

        assert await connector.update_order_status("1", "teleported") is False

    @pytest.mark.asyncio
    async def test_unmapped_status_returns_false_without_request(self, build_connector):
        connector = build_connector(ShopeeConnector, SHOPEE_CREDS)

        with patch.object(connector, "_request", AsyncMock()) as request:
            assert await connector.update_order_status("SN1", OrderStatus.PENDING) is False

        request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shopify_cancel(self, build_connector):
        connector = build_connector(ShopifyConnector, SHOPIFY_CREDS)

        with patch.object(connector, "_request", AsyncMock(return_value={})) as request:
            assert await connector.update_order_status("42", "cancelled") is True

        request.assert_awaited_once_with("POST", "/orders/42/cancel.json", body={})

    @pytest.mark.asyncio
    async def test_failure_returns_false(self, build_connector):
        connector = build_connector(TikTokConnector, TIKTOK_CREDS)
        error = PlatformAPIException("nope", platform="tiktok")

        with patch.object(connector, "_request", AsyncMock(side_effect=error)):
            assert await connector.update_order_status("T1", OrderStatus.SHIPPED) is False


class TestRequestPipeline:
    """Tests para la cadena SSRF -> rate limit -> circuit breaker -> HTTP."""

    @pytest.mark.asyncio
    async def test_shopify_request_url_and_headers(self, build_connector):
        connector = build_connector(ShopifyConnector, SHOPIFY_CREDS)
        session = FakeSession(FakeResponse(payload={"orders": []}))
        connector.session = session

        data = await connector._request("GET", "/orders.json", {"limit": 1})

        method, url, kwargs = session.calls[0]
        assert data == {"orders": []}
        assert url == "https://demo.myshopify.com/admin/api/2024-10/orders.json"
        assert kwargs["headers"]["X-Shopify-Access-Token"] == "shpat_" + "a" * 32
        assert kwargs["allow_redirects"] is False

    @pytest.mark.asyncio
    async def test_ssrf_rejection_blocks_request(self, build_connector):
        connector = build_connector(ShopifyConnector, SHOPIFY_CREDS)
        session = FakeSession(FakeResponse(payload={}))
        connector.session = session

        with patch.object(connector, "_base_url", return_value="https://evil.example.com"):
            with pytest.raises(SsrfRejectedException):
                await connector._request("GET", "/orders.json")

        assert session.calls == []

    @pytest.mark.asyncio
    async def test_http_error_maps_to_platform_exception(self, build_connector):
        connector = build_connector(ShopeeConnector, SHOPEE_CREDS)
        connector.session = FakeSession(FakeResponse(status=500, text="internal error"))

        with pytest.raises(PlatformAPIException) as exc_info:
            await connector._request("GET", "/api/v2/shop/get_shop_info")

        assert exc_info.value.api_response_code == 500

    @pytest.mark.asyncio
    async def test_network_error_maps_to_platform_exception(self, build_connector):
        connector = build_connector(TikTokConnector, TIKTOK_CREDS)
        connector.session = FakeSession(error=aiohttp.ClientConnectionError("refused"))

        with pytest.raises(PlatformAPIException):
            await connector._request("GET", "/authorization/202309/shops")

    @pytest.mark.asyncio
    async def test_invalid_json_body_maps_to_platform_exception(self, build_connector):
        """Un 200 con HTML en vez de JSON es un error de plataforma."""
        connector = build_connector(ShopeeConnector, SHOPEE_CREDS)
        error = json.JSONDecodeError("Expecting value", "<html>", 0)
        connector.session = FakeSession(FakeResponse(text="<html>", json_error=error))

        with pytest.raises(PlatformAPIException) as exc_info:
            await connector._request("GET", "/api/v2/shop/get_shop_info")

        assert "Invalid JSON" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_error_envelope_in_2xx_body(self, build_connector):
        connector = build_connector(LazadaConnector, LAZADA_CREDS)
        connector.session = FakeSession(FakeResponse(payload={"code": "IllegalAccessToken", "message": "expired"}))

        with pytest.raises(PlatformAPIException) as exc_info:
            await connector._request("GET", "/seller/get")

        assert exc_info.value.platform_error == "IllegalAccessToken"

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(self, build_connector, settings):
        """Tras el umbral de fallas el request falla rápido sin tocar la red."""
        connector = build_connector(ShopifyConnector, SHOPIFY_CREDS)
        session = FakeSession(FakeResponse(status=503, text="unavailable"))
        connector.session = session

        for _ in range(settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD):
            with pytest.raises(PlatformAPIException):
                await connector._request("GET", "/orders.json")

        with pytest.raises(CircuitOpenException):
            await connector._request("GET", "/orders.json")

        assert len(session.calls) == settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD

    @pytest.mark.asyncio
    async def test_lazada_sends_signed_query(self, build_connector):
        connector = build_connector(LazadaConnector, LAZADA_CREDS)
        session = FakeSession(FakeResponse(payload={"code": "0", "data": {}}))
        connector.session = session

        await connector._request("GET", "/orders/get", {"offset": 0})

        _, url, kwargs = session.calls[0]
        assert url == "https://api.lazada.com/rest/orders/get"
        assert kwargs["params"]["sign"].isupper()
        assert kwargs["params"]["app_key"] == "lazada-app-key-01"


class TestPagination:
    """Tests para la paginación de fetch_orders."""

    @pytest.mark.asyncio
    async def test_shopify_pages_with_since_id(self, build_connector):
        connector = build_connector(ShopifyConnector, SHOPIFY_CREDS)
        pages = [{"orders": [{"id": i} for i in range(1, 251)]}, {"orders": [{"id": 251}]}]
        seen = []

        async def fake_request(method, path, params=None, body=None):
            seen.append(dict(params))
            return pages[len(seen) - 1]

        with patch.object(connector, "_request", side_effect=fake_request):
            orders = await connector.fetch_orders()

        assert len(orders) == 251
        assert [p["since_id"] for p in seen] == [0, 250]

    @pytest.mark.asyncio
    async def test_fetch_stops_at_max_orders(self, build_connector, settings):
        settings.PLATFORM_MAX_ORDERS_PER_FETCH = 300
        connector = build_connector(ShopifyConnector, SHOPIFY_CREDS)
        full_page = {"orders": [{"id": i} for i in range(250)]}

        with patch.object(connector, "_request", AsyncMock(return_value=full_page)) as request:
            orders = await connector.fetch_orders()

        assert len(orders) == 300
        assert request.await_count == 2

    @pytest.mark.asyncio
    async def test_tiktok_follows_page_token(self, build_connector):
        connector = build_connector(TikTokConnector, TIKTOK_CREDS)
        responses = [
            {"code": 0, "data": {"orders": [{"id": "1"}], "next_page_token": "abc"}},
            {"code": 0, "data": {"orders": [{"id": "2"}], "next_page_token": ""}},
        ]

        with patch.object(connector, "_request", AsyncMock(side_effect=responses)) as request:
            orders = await connector.fetch_orders()

        assert [o["id"] for o in orders] == ["1", "2"]
        assert request.await_args_list[1].args[2]["page_token"] == "abc"

    @pytest.mark.asyncio
    async def test_lazada_pages_with_offset(self, build_connector):
        connector = build_connector(LazadaConnector, LAZADA_CREDS)
        responses = [
            {"code": "0", "data": {"orders": [{"order_id": i} for i in range(100)]}},
            {"code": "0", "data": {"orders": [{"order_id": 100}]}},
        ]

        with patch.object(connector, "_request", AsyncMock(side_effect=responses)) as request:
            orders = await connector.fetch_orders()

        assert len(orders) == 101
        assert request.await_args_list[1].args[2]["offset"] == 100

    @pytest.mark.asyncio
    async def test_shopee_expands_order_list_into_details(self, build_connector):
        connector = build_connector(ShopeeConnector, SHOPEE_CREDS)

        async def fake_request(method, path, params=None, body=None):
            if path.endswith("get_order_list"):
                return {"response": {"order_list": [{"order_sn": "SN1"}, {"order_sn": "SN2"}], "more": False}}
            return {"response": {"order_list": [{"order_sn": sn} for sn in params["order_sn_list"].split(",")]}}

        with patch.object(connector, "_request", side_effect=fake_request):
            orders = await connector.fetch_orders()

        assert [o["order_sn"] for o in orders] == ["SN1", "SN2"]


class TestConfigurationSchema:
    """Tests para get_configuration_schema."""

    def test_schema_lists_required_and_secret_fields(self, build_connector):
        schema = build_connector(ShopeeConnector).get_configuration_schema()

        assert schema["platform"] == "shopee"
        assert set(schema["required"]) == {"partner_id", "partner_key", "shop_id"}
        assert "partner_key" in schema["secret_fields"]
        assert "platform" not in schema["fields"]
        assert schema["allowed_domains"] == ["partner.shopeemobile.com", "partner.test-stable.shopeemobile.com"]
