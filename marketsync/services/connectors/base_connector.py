"""
Base platform connector with common functionality.

Every platform connector inherits session management, credential loading
and the outbound request chain from this class:

    SsrfGuard (platform allowlist) -> rate limiter -> circuit breaker -> aiohttp

Subclasses only describe their platform: base URL, request signing, error
envelope, pagination and the status-update vocabulary.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import aiohttp
from aiohttp import ClientTimeout

from marketsync.core.config import Settings, get_settings
from marketsync.core.logging_config import log_api_call
from marketsync.domain.models import CREDENTIAL_MODELS, BaseCredentials, OrderStatus, PlatformType
from marketsync.services.credential_store import CredentialStore
from marketsync.utils.circuit_breaker import CircuitBreaker
from marketsync.utils.error_handler import AppException, AuthenticationException, PlatformAPIException
from marketsync.utils.rate_limiter import SlidingWindowRateLimiter
from marketsync.utils.redaction import redact_text
from marketsync.utils.ssrf_guard import SsrfGuard, sanitize_url_parameters

logger = logging.getLogger(__name__)

# (url, query params, headers, serialized body)
PreparedRequest = Tuple[str, Dict[str, Any], Dict[str, str], Optional[str]]


class BasePlatformConnector(ABC):
    """
    Base connector for marketplace APIs.

    Args:
        credential_store: Source of the platform credentials
        circuit_breaker: Breaker owned by this platform
        rate_limiter: Shared sliding-window rate limiter
        ssrf_guard: Outbound URL validator
        settings: Application settings
    """

    platform: PlatformType
    # Canonical status -> platform action; statuses missing here cannot be pushed
    STATUS_UPDATE_MAP: Dict[OrderStatus, str] = {}

    def __init__(
        self,
        credential_store: CredentialStore,
        circuit_breaker: CircuitBreaker,
        rate_limiter: SlidingWindowRateLimiter,
        ssrf_guard: SsrfGuard,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.credential_store = credential_store
        self.circuit_breaker = circuit_breaker
        self.rate_limiter = rate_limiter
        self.ssrf_guard = ssrf_guard
        self.credentials: Optional[BaseCredentials] = None
        self.session: Optional[aiohttp.ClientSession] = None
        self.max_orders = self.settings.PLATFORM_MAX_ORDERS_PER_FETCH

    @property
    def allowed_domains(self) -> List[str]:
        return self.settings.get_allowed_domains(self.platform)

    @property
    def rate_limit(self) -> int:
        return self.settings.get_rate_limit(self.platform)

    # === SESIÓN ===

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            timeout = ClientTimeout(total=self.settings.PLATFORM_REQUEST_TIMEOUT)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": f"MarketSync/{self.settings.APP_VERSION}"},
            )
        return self.session

    async def close(self) -> None:
        """Close the HTTP session and clean up resources."""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    # === CAPACIDADES ===

    async def authenticate(self, credentials: Optional[Union[BaseCredentials, Mapping[str, Any]]] = None) -> bool:
        """
        Exercise the platform's lightweight read endpoint.

        Never raises: any failure is logged and reported as False.

        Args:
            credentials: Credentials to try; loaded from the store when omitted

        Returns:
            bool: True if the platform accepted the credentials
        """
        previous = self.credentials
        try:
            if credentials is None:
                self.credentials = await self.credential_store.get(self.platform)
                if self.credentials is None:
                    logger.warning(f"No credentials configured for {self.platform.value}")
                    return False
            elif isinstance(credentials, BaseCredentials):
                self.credentials = credentials
            else:
                self.credentials = self.credential_store.validate(self.platform, credentials)

            await self._verify_credentials()
            logger.info(f"✅ Authenticated with {self.platform.value}")
            return True

        except AppException as e:
            logger.error(f"❌ Authentication with {self.platform.value} failed: {redact_text(str(e))}")
            self.credentials = previous
            return False
        except Exception as e:
            logger.error(f"❌ Unexpected error authenticating with {self.platform.value}: {redact_text(str(e))}")
            self.credentials = previous
            return False

    @abstractmethod
    async def fetch_orders(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Fetch raw orders created since the given timestamp.

        Pagination is sequential and stops at exhaustion or at
        PLATFORM_MAX_ORDERS_PER_FETCH orders.

        Raises:
            PlatformAPIException, CircuitOpenException, RateLimitException,
            SsrfRejectedException, AuthenticationException
        """

    async def update_order_status(self, external_id: str, internal_status: Union[OrderStatus, str]) -> bool:
        """
        Push a canonical status to the platform.

        Never raises: returns False when the status has no platform mapping
        or the update fails.
        """
        try:
            status = OrderStatus(internal_status)
        except ValueError:
            logger.warning(f"Unknown order status '{internal_status}' for {self.platform.value}")
            return False

        if status not in self.STATUS_UPDATE_MAP:
            logger.info(f"No {self.platform.value} status mapping for '{status.value}', skipping order {external_id}")
            return False

        try:
            await self._push_status(str(external_id), status)
            logger.info(f"✅ Order {external_id} updated to '{status.value}' on {self.platform.value}")
            return True
        except AppException as e:
            logger.error(f"❌ Failed to update order {external_id} on {self.platform.value}: {redact_text(str(e))}")
            return False
        except Exception as e:
            logger.error(f"❌ Unexpected error updating order {external_id} on {self.platform.value}: {redact_text(str(e))}")
            return False

    def verify_webhook_signature(self, payload: Union[bytes, str], signature: str, secret: str) -> bool:
        """
        Verifica la firma HMAC-SHA256 de un webhook.

        Args:
            payload: Cuerpo crudo del webhook
            signature: Firma recibida en el header
            secret: Secreto compartido con la plataforma

        Returns:
            bool: True si la firma es válida (comparación en tiempo constante)
        """
        if not secret or not signature:
            logger.warning(f"Missing webhook secret or signature for {self.platform.value}")
            return False

        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
        expected = self._encode_webhook_digest(digest)
        return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))

    def _encode_webhook_digest(self, digest: bytes) -> str:
        return digest.hex()

    def get_configuration_schema(self) -> Dict[str, Any]:
        """
        Declarative description of the credential fields.

        Built from the platform's credential model, so the schema always
        matches what CredentialStore validates.
        """
        model = CREDENTIAL_MODELS[self.platform]
        schema = model.model_json_schema()
        properties = {k: v for k, v in schema.get("properties", {}).items() if k != "platform"}
        return {
            "platform": self.platform.value,
            "fields": properties,
            "required": [f for f in schema.get("required", []) if f != "platform"],
            "secret_fields": list(model.secret_fields),
            "rate_limit_per_minute": self.rate_limit,
            "allowed_domains": self.allowed_domains,
        }

    # === HOOKS POR PLATAFORMA ===

    @abstractmethod
    async def _verify_credentials(self) -> None:
        """Call the lightweight read endpoint; raise on rejection."""

    @abstractmethod
    async def _push_status(self, external_id: str, status: OrderStatus) -> None:
        """Send a mapped status update; raise on rejection."""

    @abstractmethod
    def _base_url(self, credentials: BaseCredentials) -> str:
        """Base API URL for these credentials."""

    def _prepare_request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any],
        body: Optional[Dict[str, Any]],
        credentials: BaseCredentials,
    ) -> PreparedRequest:
        """Build url, query, headers and body; platforms override to sign."""
        data = json.dumps(body) if body is not None else None
        headers = {"Content-Type": "application/json"}
        return f"{self._base_url(credentials)}{path}", params, headers, data

    def _check_envelope(self, data: Dict[str, Any], path: str) -> None:
        """Raise PlatformAPIException when a 2xx body carries an error."""

    # === REQUESTS ===

    async def _load_credentials(self) -> BaseCredentials:
        if self.credentials is None:
            self.credentials = await self.credential_store.get(self.platform)
        if self.credentials is None:
            raise AuthenticationException(f"No credentials configured for {self.platform.value}", self.platform.value)
        return self.credentials

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Issue one API request through the full protection chain.

        Args:
            method: HTTP method
            path: API path relative to the base URL
            params: Query parameters
            body: JSON body

        Returns:
            Dict: Decoded JSON response
        """
        credentials = await self._load_credentials()
        query_params = sanitize_url_parameters(params)
        url, query, headers, data = self._prepare_request(method, path, query_params, body, credentials)

        await self.ssrf_guard.validate_async(url, self.allowed_domains)
        await self.rate_limiter.acquire(self.platform.value, self.rate_limit)
        return await self.circuit_breaker.call(self._send, method, url, path, query, headers, data)

    async def _send(
        self,
        method: str,
        url: str,
        path: str,
        params: Dict[str, Any],
        headers: Dict[str, str],
        data: Optional[str],
    ) -> Dict[str, Any]:
        session = await self._get_session()
        start_time = time.monotonic()
        try:
            async with session.request(
                method,
                url,
                params=params or None,
                data=data,
                headers=headers,
                allow_redirects=False,
            ) as response:
                log_api_call(method, url, response.status, time.monotonic() - start_time, platform=self.platform.value)

                if response.status >= 300:
                    text = await response.text()
                    raise PlatformAPIException(
                        message=f"HTTP {response.status} from {self.platform.value}: {redact_text(text[:200])}",
                        platform=self.platform.value,
                        api_response_code=response.status,
                        endpoint=path,
                    )

                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    raise PlatformAPIException(
                        message=f"Invalid JSON from {self.platform.value}: {type(e).__name__}",
                        platform=self.platform.value,
                        api_response_code=response.status,
                        endpoint=path,
                    ) from e

        except aiohttp.ClientError as e:
            raise PlatformAPIException(
                message=f"Network error calling {self.platform.value}: {e}",
                platform=self.platform.value,
                endpoint=path,
            ) from e
        except asyncio.TimeoutError as e:
            raise PlatformAPIException(
                message=f"Timeout after {self.settings.PLATFORM_REQUEST_TIMEOUT}s calling {self.platform.value}",
                platform=self.platform.value,
                endpoint=path,
            ) from e

        if not isinstance(payload, dict):
            raise PlatformAPIException(
                message=f"Unexpected response body from {self.platform.value}",
                platform=self.platform.value,
                endpoint=path,
            )

        self._check_envelope(payload, path)
        return payload

    def _raise_platform_error(self, path: str, code: Any, message: Optional[str]) -> None:
        raise PlatformAPIException(
            message=f"{self.platform.value} API error on {path}: {message or 'Unknown error'}",
            platform=self.platform.value,
            endpoint=path,
            platform_error=str(code),
        )

    @staticmethod
    def _hmac_sha256_hex(secret: str, message: str) -> str:
        return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()

    @staticmethod
    def _b64(digest: bytes) -> str:
        return base64.b64encode(digest).decode("ascii")
