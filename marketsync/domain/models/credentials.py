"""
Credenciales por plataforma como unión etiquetada.

Cada plataforma tiene su propio modelo Pydantic con sus campos requeridos
y reglas de formato; el PlatformType selecciona la variante. Los secretos
son SecretStr, así que nunca aparecen en reprs ni en logs.
"""

import re
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from marketsync.domain.models.order import PlatformType

SHOPIFY_DOMAIN_PATTERN = re.compile(r"^[a-zA-Z0-9\-]+\.myshopify\.com$")
LAZADA_COUNTRIES = ("TH", "MY", "SG", "PH", "VN", "ID")


def _require_min_length(value: SecretStr, length: int, field_name: str) -> SecretStr:
    if len(value.get_secret_value()) < length:
        raise ValueError(f"{field_name} must be at least {length} characters")
    return value


def _require_numeric(value: Any, field_name: str) -> str:
    text = str(value).strip()
    if not text.isdigit():
        raise ValueError(f"{field_name} must be numeric")
    return text


class BaseCredentials(BaseModel):
    """Campos y comportamiento comunes a todas las credenciales."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, frozen=True)

    platform: PlatformType
    webhook_secret: Optional[SecretStr] = None

    # Nombres de campos secretos, para serializar y redactar
    secret_fields: ClassVar[tuple[str, ...]] = ("webhook_secret",)

    def to_plain_dict(self) -> dict[str, Any]:
        """Diccionario con los secretos en claro; solo para cifrar."""
        data = self.model_dump(exclude_none=True)
        for name, value in list(data.items()):
            if isinstance(value, SecretStr):
                data[name] = value.get_secret_value()
        data["platform"] = self.platform.value
        return data

    def secret_values(self) -> list[str]:
        values = []
        for name in self.secret_fields:
            value = getattr(self, name, None)
            if isinstance(value, SecretStr):
                values.append(value.get_secret_value())
        return values


class ShopeeCredentials(BaseCredentials):
    """Credenciales de Shopee Open Platform."""

    platform: Literal[PlatformType.SHOPEE] = PlatformType.SHOPEE
    partner_id: str
    partner_key: SecretStr
    shop_id: str
    access_token: Optional[SecretStr] = None
    pickup_address_id: Optional[str] = None
    pickup_time_id: Optional[str] = None

    secret_fields: ClassVar[tuple[str, ...]] = ("partner_key", "access_token", "webhook_secret")

    @field_validator("partner_id", "shop_id", mode="before")
    @classmethod
    def validate_numeric(cls, v, info):
        return _require_numeric(v, info.field_name)

    @field_validator("partner_key")
    @classmethod
    def validate_partner_key(cls, v):
        return _require_min_length(v, 32, "partner_key")


class LazadaCredentials(BaseCredentials):
    """Credenciales de Lazada Open Platform."""

    platform: Literal[PlatformType.LAZADA] = PlatformType.LAZADA
    app_key: str = Field(min_length=16)
    app_secret: SecretStr
    access_token: SecretStr
    country: Optional[str] = None

    secret_fields: ClassVar[tuple[str, ...]] = ("app_secret", "access_token", "webhook_secret")

    @field_validator("app_secret")
    @classmethod
    def validate_app_secret(cls, v):
        return _require_min_length(v, 32, "app_secret")

    @field_validator("access_token")
    @classmethod
    def validate_access_token(cls, v):
        return _require_min_length(v, 32, "access_token")

    @field_validator("country")
    @classmethod
    def validate_country(cls, v):
        if v is None:
            return v
        v = v.upper()
        if v not in LAZADA_COUNTRIES:
            raise ValueError(f"country must be one of: {', '.join(LAZADA_COUNTRIES)}")
        return v


class ShopifyCredentials(BaseCredentials):
    """Credenciales de una app custom de Shopify."""

    platform: Literal[PlatformType.SHOPIFY] = PlatformType.SHOPIFY
    shop_domain: str
    access_token: SecretStr
    api_key: SecretStr
    location_id: Optional[str] = None

    secret_fields: ClassVar[tuple[str, ...]] = ("access_token", "api_key", "webhook_secret")

    @field_validator("shop_domain", mode="before")
    @classmethod
    def validate_shop_domain(cls, v):
        domain = str(v).strip().lower().replace("https://", "").replace("http://", "").rstrip("/")
        if not SHOPIFY_DOMAIN_PATTERN.match(domain):
            raise ValueError("shop_domain must look like your-store.myshopify.com")
        return domain

    @field_validator("access_token")
    @classmethod
    def validate_access_token(cls, v):
        if not v.get_secret_value().startswith("shpat_"):
            raise ValueError("access_token must start with 'shpat_'")
        return v

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v):
        return _require_min_length(v, 32, "api_key")


class TikTokCredentials(BaseCredentials):
    """Credenciales de TikTok Shop Partner API."""

    platform: Literal[PlatformType.TIKTOK] = PlatformType.TIKTOK
    app_key: str = Field(min_length=16)
    app_secret: SecretStr
    access_token: SecretStr
    shop_id: str
    shop_cipher: Optional[str] = None
    warehouse_id: Optional[str] = None

    secret_fields: ClassVar[tuple[str, ...]] = ("app_secret", "access_token", "webhook_secret")

    @field_validator("app_secret")
    @classmethod
    def validate_app_secret(cls, v):
        return _require_min_length(v, 32, "app_secret")

    @field_validator("access_token")
    @classmethod
    def validate_access_token(cls, v):
        return _require_min_length(v, 32, "access_token")

    @field_validator("shop_id", mode="before")
    @classmethod
    def validate_shop_id(cls, v):
        return _require_numeric(v, "shop_id")


PlatformCredentials = Annotated[
    Union[ShopeeCredentials, LazadaCredentials, ShopifyCredentials, TikTokCredentials],
    Field(discriminator="platform"),
]

CREDENTIAL_MODELS: dict[PlatformType, type[BaseCredentials]] = {
    PlatformType.SHOPEE: ShopeeCredentials,
    PlatformType.LAZADA: LazadaCredentials,
    PlatformType.SHOPIFY: ShopifyCredentials,
    PlatformType.TIKTOK: TikTokCredentials,
}


def parse_credentials(platform: PlatformType, data: dict[str, Any]) -> BaseCredentials:
    """
    Valida un diccionario contra el modelo de la plataforma.

    Args:
        platform: Plataforma que selecciona la variante
        data: Campos de credenciales

    Returns:
        BaseCredentials: Instancia tipada de la variante

    Raises:
        pydantic.ValidationError: Si faltan campos o no cumplen el formato
    """
    payload = {**data, "platform": platform}
    return CREDENTIAL_MODELS[platform].model_validate(payload)
