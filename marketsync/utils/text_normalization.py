"""
Normalización de texto para comparar pedidos entre plataformas.

Los mismos clientes llegan escritos de formas distintas en cada
marketplace: teléfonos con y sin prefijo de país, nombres con puntuación,
direcciones abreviadas o no. Estas funciones producen formas comparables.
"""

import re

# Prefijos de país que se eliminan al comparar teléfonos (US, MY, SG, TH, VN, ID)
PHONE_COUNTRY_PREFIXES = ("1", "60", "65", "66", "84", "62")

ADDRESS_ABBREVIATIONS = {
    "street": "st",
    "avenue": "ave",
    "boulevard": "blvd",
    "road": "rd",
    "drive": "dr",
    "apartment": "apt",
    "suite": "ste",
}

_NON_DIGITS = re.compile(r"\D")
_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_PHONE_PREFIX = re.compile(r"^(?:%s)" % "|".join(PHONE_COUNTRY_PREFIXES))
_ABBREVIATION_PATTERN = re.compile(r"\b(%s)\b" % "|".join(ADDRESS_ABBREVIATIONS))


def digits_only(value: str | None) -> str:
    return _NON_DIGITS.sub("", value or "")


def normalize_phone(phone: str | None) -> str:
    """
    Normaliza un teléfono para agrupar duplicados.

    Deja solo dígitos y elimina un prefijo de país conocido.

    Args:
        phone: Teléfono tal como lo entrega la plataforma

    Returns:
        str: Dígitos sin prefijo ("" si no hay dígitos)
    """
    return _PHONE_PREFIX.sub("", digits_only(phone), count=1)


def normalize_name(name: str | None) -> str:
    """Minúsculas, sin puntuación y con espacios colapsados."""
    normalized = _PUNCTUATION.sub("", (name or "").strip().lower())
    return _WHITESPACE.sub(" ", normalized).strip()


def normalize_address(address: str | None) -> str:
    """
    Normaliza una dirección plegando abreviaturas comunes.

    Args:
        address: Dirección de envío como string de presentación

    Returns:
        str: Dirección comparable (street→st, avenue→ave, ...)
    """
    normalized = (address or "").strip().lower()
    normalized = _ABBREVIATION_PATTERN.sub(lambda m: ADDRESS_ABBREVIATIONS[m.group(1)], normalized)
    normalized = _PUNCTUATION.sub("", normalized)
    return _WHITESPACE.sub(" ", normalized).strip()


def levenshtein_distance(left: str, right: str) -> int:
    """Distancia de edición clásica (inserción, borrado, sustitución)."""
    if left == right:
        return 0
    if len(left) < len(right):
        left, right = right, left
    if not right:
        return len(left)

    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (left_char != right_char),
                )
            )
        previous = current
    return previous[-1]


def similarity(left: str | None, right: str | None) -> float:
    """
    Similitud entre 0 y 1 basada en Levenshtein.

    Compara en minúsculas y sin espacios en los extremos; dos cadenas
    vacías son idénticas.
    """
    left = (left or "").strip().lower()
    right = (right or "").strip().lower()
    if left == right:
        return 1.0
    max_length = max(len(left), len(right))
    return 1 - levenshtein_distance(left, right) / max_length
