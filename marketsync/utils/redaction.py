"""
Utilidades para ocultar credenciales antes de que lleguen a un log.

Se usan desde el filtro de logging, el CredentialStore y los conectores.
"""

import re
import threading
from typing import Any, Iterable, Mapping

REDACTED = "***REDACTED***"

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "secret",
        "key",
        "token",
        "access_token",
        "refresh_token",
        "partner_key",
        "app_secret",
        "api_key",
        "webhook_secret",
        "signature",
        "sign",
        "authorization",
        "x-shopify-access-token",
        "x-tts-access-token",
    }
)

# key=value, key: value, "key": "value" dentro de mensajes libres
_INLINE_SECRET_PATTERN = re.compile(
    r"(?i)(\b(?:access_token|refresh_token|partner_key|app_secret|api_key|webhook_secret|"
    r"secret|token|password|signature|sign)\b[\"']?\s*[:=]\s*[\"']?)([^\s\"'&,}]+)"
)

_MIN_SECRET_LENGTH = 8
_known_secrets: set[str] = set()
_known_secrets_lock = threading.Lock()


def is_sensitive_key(key: Any) -> bool:
    """Indica si el nombre de un campo corresponde a un secreto."""
    name = str(key).lower()
    if name in SENSITIVE_KEYS:
        return True
    return name.endswith(("_secret", "_token", "_key", "_password"))


def redact_credentials(data: Any) -> Any:
    """
    Devuelve una copia de la estructura con los valores sensibles ocultos.

    Args:
        data: Diccionario, lista o valor escalar

    Returns:
        Any: Copia con secretos reemplazados por REDACTED
    """
    if isinstance(data, Mapping):
        return {
            k: (REDACTED if is_sensitive_key(k) and v not in (None, "") else redact_credentials(v))
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(redact_credentials(v) for v in data)
    if isinstance(data, str):
        return redact_text(data)
    return data


def register_secrets(values: Iterable[str]) -> None:
    """Registra valores secretos concretos para ocultarlos en cualquier mensaje."""
    with _known_secrets_lock:
        for value in values:
            if value and len(value) >= _MIN_SECRET_LENGTH:
                _known_secrets.add(value)


def clear_registered_secrets() -> None:
    with _known_secrets_lock:
        _known_secrets.clear()


def redact_text(text: str) -> str:
    """Oculta secretos registrados y pares clave=valor sensibles en un texto."""
    if not text:
        return text
    with _known_secrets_lock:
        secrets = sorted(_known_secrets, key=len, reverse=True)
    for secret in secrets:
        if secret in text:
            text = text.replace(secret, REDACTED)
    return _INLINE_SECRET_PATTERN.sub(lambda m: f"{m.group(1)}{REDACTED}", text)
