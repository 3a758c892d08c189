"""
Guarda SSRF para toda URL saliente.

Todo request que emiten los conectores pasa primero por aquí con la lista
de dominios permitidos de su plataforma. Una URL se rechaza si:

- no es HTTPS, o contiene esquemas peligrosos / hosts locales en cualquier parte
- usa un puerto de la lista de puertos sensibles
- su host no es (ni es subdominio de) un dominio permitido
- su host resuelve a una IP privada, loopback, link-local o reservada
- la resolución DNS falla (fail-closed)
"""

import asyncio
import ipaddress
import logging
import re
import socket
from typing import Iterable, Mapping, Optional
from urllib.parse import urlsplit

from marketsync.utils.error_handler import SsrfRejectedException

logger = logging.getLogger(__name__)

BLOCKED_PORTS = frozenset({22, 23, 25, 53, 110, 143, 993, 995, 1433, 3306, 5432, 6379, 27017})

PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
)

SUSPICIOUS_PATTERNS = (
    "localhost",
    "0.0.0.0",
    "[::]",
    "file://",
    "ftp://",
    "gopher://",
    "dict://",
)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_DANGEROUS_VALUE_SCHEMES = re.compile(r"(?i)^\s*(javascript|data|vbscript|file|gopher|dict|ftp):")


def is_forbidden_ip(address: str) -> bool:
    """
    Indica si una IP no debe ser destino de un request saliente.

    Args:
        address: IPv4 o IPv6 en texto

    Returns:
        bool: True para direcciones privadas, loopback, link-local o reservadas
    """
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return True

    # IPv4 embebida en IPv6 (::ffff:10.0.0.1)
    mapped = getattr(ip, "ipv4_mapped", None)
    if mapped is not None:
        ip = mapped

    if any(ip in network for network in PRIVATE_NETWORKS if network.version == ip.version):
        return True

    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def host_matches_allowlist(host: str, allowed_domains: Iterable[str]) -> bool:
    """El host es un dominio permitido o un subdominio suyo."""
    host = host.lower().rstrip(".")
    for domain in allowed_domains:
        domain = domain.lower().strip().lstrip(".").rstrip(".")
        if domain and (host == domain or host.endswith("." + domain)):
            return True
    return False


class SsrfGuard:
    """
    Valida URLs salientes antes de emitir el request.

    No mantiene estado mutable; una instancia puede compartirse entre
    conectores y tareas concurrentes.
    """

    def __init__(self, resolver=None):
        """
        Args:
            resolver: Función compatible con socket.getaddrinfo (por defecto la del sistema)
        """
        self._resolver = resolver

    def validate(self, url: str, allowed_domains: Iterable[str]) -> None:
        """
        Valida una URL contra las reglas SSRF.

        Args:
            url: URL completa a validar
            allowed_domains: Dominios permitidos para la plataforma

        Raises:
            SsrfRejectedException: Si la URL no es segura
        """
        allowed_domains = list(allowed_domains)

        if not url or not isinstance(url, str):
            self._reject(str(url), "empty_url", "URL must be a non-empty string")

        lowered = url.lower()
        for pattern in SUSPICIOUS_PATTERNS:
            if pattern in lowered:
                self._reject(url, "suspicious_pattern", f"URL contains forbidden pattern '{pattern}'")

        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as e:
            self._reject(url, "malformed_url", f"Malformed URL: {e}")

        if parts.scheme.lower() != "https":
            self._reject(url, "scheme", f"Only HTTPS is allowed, got '{parts.scheme or 'none'}'")

        host = (parts.hostname or "").lower()
        if not host:
            self._reject(url, "missing_host", "URL has no host")

        if parts.username or parts.password:
            self._reject(url, "userinfo", "Credentials embedded in URL are not allowed")

        if port is not None and port in BLOCKED_PORTS:
            self._reject(url, "blocked_port", f"Port {port} is not allowed")

        if not host_matches_allowlist(host, allowed_domains):
            self._reject(url, "domain_not_allowed", f"Host '{host}' is not in the allowed domains")

        for address in self._resolve(url, host, port or 443):
            if is_forbidden_ip(address):
                self._reject(url, "private_ip", f"Host '{host}' resolves to forbidden address {address}")

        logger.debug(f"URL validated for outbound request: {parts.scheme}://{host}{parts.path}")

    async def validate_async(self, url: str, allowed_domains: Iterable[str]) -> None:
        """Igual que validate(), resolviendo DNS fuera del event loop."""
        await asyncio.to_thread(self.validate, url, list(allowed_domains))

    def is_safe(self, url: str, allowed_domains: Iterable[str]) -> bool:
        """Versión booleana de validate()."""
        try:
            self.validate(url, allowed_domains)
            return True
        except SsrfRejectedException:
            return False

    def _resolve(self, url: str, host: str, port: int) -> list[str]:
        # IP literal: no hay DNS que consultar
        try:
            ipaddress.ip_address(host)
            return [host]
        except ValueError:
            pass

        resolver = self._resolver or socket.getaddrinfo
        try:
            infos = resolver(host, port, proto=socket.IPPROTO_TCP)
        except (socket.gaierror, UnicodeError, OSError) as e:
            self._reject(url, "dns_failure", f"DNS resolution failed for '{host}': {e}")

        addresses = [info[4][0] for info in infos if info and len(info) >= 5]
        if not addresses:
            self._reject(url, "dns_failure", f"DNS resolution returned no addresses for '{host}'")
        return addresses

    @staticmethod
    def _reject(url: str, reason: str, message: str) -> None:
        logger.error(f"🛑 SSRF protection rejected URL ({reason}): {message}")
        raise SsrfRejectedException(message=message, url=url, reason=reason)


def sanitize_url_parameters(params: Optional[Mapping[str, object]]) -> dict[str, str]:
    """
    Limpia valores de query string antes de construir la URL.

    Quita caracteres de control y vacía valores con esquemas peligrosos.

    Args:
        params: Parámetros de query

    Returns:
        dict: Parámetros saneados como strings
    """
    sanitized: dict[str, str] = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        text = _CONTROL_CHARS.sub("", str(value))
        if _DANGEROUS_VALUE_SCHEMES.match(text):
            logger.warning(f"Dropped dangerous value for URL parameter '{key}'")
            text = ""
        sanitized[_CONTROL_CHARS.sub("", str(key))] = text
    return sanitized
