"""
Configuración centralizada de la aplicación.

Este módulo maneja todas las variables de entorno y configuraciones
de la aplicación usando Pydantic Settings para validación automática.
Las tablas estáticas por plataforma (endpoints y dominios permitidos)
viven junto a la configuración para que conectores y guardas SSRF
lean de una sola fuente.
"""

from functools import lru_cache
from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

# === TABLAS ESTÁTICAS POR PLATAFORMA ===

PLATFORM_ENDPOINTS: dict[str, dict[str, str]] = {
    "shopee": {
        "sandbox": "https://partner.test-stable.shopeemobile.com",
        "production": "https://partner.shopeemobile.com",
    },
    "lazada": {
        "sandbox": "https://api.lazada.com/rest",
        "production": "https://api.lazada.com/rest",
    },
    "shopify": {
        # {shop_domain} se resuelve con las credenciales de la tienda
        "sandbox": "https://{shop_domain}/admin/api/{api_version}",
        "production": "https://{shop_domain}/admin/api/{api_version}",
    },
    "tiktok": {
        "sandbox": "https://open-api-sandbox.tiktokglobalshop.com",
        "production": "https://open-api.tiktokglobalshop.com",
    },
}

# Lazada expone un host regional por país
LAZADA_REGIONAL_ENDPOINTS: dict[str, str] = {
    "TH": "https://api.lazada.co.th/rest",
    "MY": "https://api.lazada.com.my/rest",
    "SG": "https://api.lazada.sg/rest",
    "PH": "https://api.lazada.com.ph/rest",
    "VN": "https://api.lazada.vn/rest",
    "ID": "https://api.lazada.co.id/rest",
}

PLATFORM_ALLOWED_DOMAINS: dict[str, list[str]] = {
    "shopee": ["partner.shopeemobile.com", "partner.test-stable.shopeemobile.com"],
    "lazada": [
        "api.lazada.com",
        "api.lazada.co.th",
        "api.lazada.com.my",
        "api.lazada.sg",
        "api.lazada.com.ph",
        "api.lazada.vn",
        "api.lazada.co.id",
    ],
    "shopify": ["myshopify.com"],
    "tiktok": ["open-api.tiktokglobalshop.com", "open-api-sandbox.tiktokglobalshop.com"],
}


def _platform_key(platform: Any) -> str:
    """Acepta un PlatformType o su valor string."""
    return str(getattr(platform, "value", platform)).lower()


class Settings(BaseSettings):
    """
    Configuración de la aplicación usando Pydantic Settings.

    Todas las configuraciones se cargan desde variables de entorno
    con valores por defecto apropiados para desarrollo.
    """

    # === CONFIGURACIÓN BÁSICA DE LA APP ===
    APP_NAME: str = "MarketSync Order Reconciliation"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # === CONFIGURACIÓN DE LOGGING ===
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="text")
    LOG_FILE_PATH: Optional[str] = Field(default=None)
    LOG_MAX_SIZE_MB: int = Field(default=10)
    LOG_BACKUP_COUNT: int = Field(default=5)

    # === CONFIGURACIÓN DE SEGURIDAD ===
    SECRET_KEY: str = Field(default="change-me-in-production")
    # Clave Fernet (urlsafe base64, 32 bytes); si falta se deriva de SECRET_KEY
    CREDENTIAL_ENCRYPTION_KEY: Optional[str] = Field(default=None)
    CREDENTIAL_CACHE_TTL: int = Field(default=300)
    CREDENTIAL_BACKUP_TTL: int = Field(default=3600)
    # JSON {plataforma: {credenciales..., sync_interval, is_active}} cargado al arrancar
    PLATFORM_CREDENTIALS_FILE: Optional[str] = Field(default=None)

    # === CONFIGURACIÓN DE REDIS ===
    REDIS_URL: Optional[str] = Field(default=None)
    REDIS_MAX_CONNECTIONS: int = Field(default=10)
    REDIS_SOCKET_TIMEOUT: int = Field(default=5)

    # === CONFIGURACIÓN DE PLATAFORMAS ===
    PLATFORM_REQUEST_TIMEOUT: int = Field(default=30)
    PLATFORM_MAX_ORDERS_PER_FETCH: int = Field(default=1000)
    SHOPEE_RATE_LIMIT: int = Field(default=100)
    LAZADA_RATE_LIMIT: int = Field(default=60)
    SHOPIFY_RATE_LIMIT: int = Field(default=40)
    TIKTOK_RATE_LIMIT: int = Field(default=120)
    SHOPIFY_API_VERSION: str = Field(default="2024-10")

    # === CIRCUIT BREAKER ===
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(default=5)
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT: int = Field(default=60)
    CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS: int = Field(default=3)

    # === CONFIGURACIÓN DE SINCRONIZACIÓN ===
    ENABLE_SCHEDULED_SYNC: bool = Field(default=True)
    SCHEDULER_INTERVAL_SECONDS: int = Field(default=60)
    DEFAULT_SYNC_INTERVAL_SECONDS: int = Field(default=3600)
    SYNC_LOCK_TTL_SECONDS: int = Field(default=1800)
    SYNC_OVERLAP_MINUTES: int = Field(default=5)
    SYNC_INITIAL_LOOKBACK_DAYS: int = Field(default=7)
    SYNC_HISTORY_LIMIT: int = Field(default=10)

    # === DEDUPLICACIÓN ===
    # Registra (sin bloquear) diferencias entre duplicados de la misma plataforma
    DEDUP_AUDIT_SAME_PLATFORM: bool = Field(default=False)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Valida que el nivel de log sea válido."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL debe ser uno de: {valid_levels}")
        return v.upper()

    @field_validator("LOG_FORMAT")
    @classmethod
    def validate_log_format(cls, v):
        """Valida el formato de salida de logs."""
        if v.lower() not in ("text", "json"):
            raise ValueError("LOG_FORMAT debe ser 'text' o 'json'")
        return v.lower()

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v):
        """Valida que el entorno sea válido."""
        valid_envs = ["development", "sandbox", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"ENVIRONMENT debe ser uno de: {valid_envs}")
        return v.lower()

    @field_validator(
        "CIRCUIT_BREAKER_FAILURE_THRESHOLD",
        "CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS",
        "PLATFORM_REQUEST_TIMEOUT",
        "SYNC_HISTORY_LIMIT",
    )
    @classmethod
    def validate_positive(cls, v):
        """Valida que los límites numéricos sean positivos."""
        if v < 1:
            raise ValueError("El valor debe ser mayor o igual a 1")
        return v

    @property
    def is_production(self) -> bool:
        """Verifica si está en entorno de producción."""
        return self.ENVIRONMENT == "production"

    @property
    def api_environment(self) -> str:
        """Entorno de API de plataformas: production o sandbox."""
        return "production" if self.is_production else "sandbox"

    @property
    def redis_config(self) -> dict:
        """Genera configuración para Redis."""
        if not self.REDIS_URL:
            return {}

        return {
            "url": self.REDIS_URL,
            "max_connections": self.REDIS_MAX_CONNECTIONS,
            "socket_timeout": self.REDIS_SOCKET_TIMEOUT,
            "decode_responses": True,
        }

    def get_rate_limit(self, platform: Any) -> int:
        """
        Obtiene el presupuesto de requests por minuto de una plataforma.

        Args:
            platform: PlatformType o nombre de plataforma

        Returns:
            int: Requests permitidos por ventana de 60 segundos
        """
        key = _platform_key(platform)
        return int(getattr(self, f"{key.upper()}_RATE_LIMIT", 60))

    def get_allowed_domains(self, platform: Any) -> list[str]:
        """Dominios a los que un conector puede llamar."""
        return list(PLATFORM_ALLOWED_DOMAINS.get(_platform_key(platform), []))

    def get_base_url(self, platform: Any, **params: str) -> str:
        """
        Resuelve la URL base de la API según el entorno.

        Args:
            platform: PlatformType o nombre de plataforma
            **params: Valores para las plantillas (p. ej. shop_domain)

        Returns:
            str: URL base sin barra final

        Raises:
            KeyError: Si la plataforma no tiene endpoints registrados
        """
        template = PLATFORM_ENDPOINTS[_platform_key(platform)][self.api_environment]
        params.setdefault("api_version", self.SHOPIFY_API_VERSION)
        return template.format(**params).rstrip("/")

    def get_logging_config(self) -> dict:
        """
        Obtiene la configuración de logging derivada del entorno.

        Returns:
            dict: Parámetros consumidos por setup_logging()
        """
        return {
            "level": self.LOG_LEVEL,
            "format": self.LOG_FORMAT,
            "file_path": self.LOG_FILE_PATH,
            "max_bytes": self.LOG_MAX_SIZE_MB * 1024 * 1024,
            "backup_count": self.LOG_BACKUP_COUNT,
            "colored": not self.is_production,
        }


@lru_cache()
def get_settings() -> Settings:
    """
    Obtiene instancia singleton de configuración.

    Usa LRU cache para evitar recrear la configuración
    múltiples veces durante la ejecución.

    Returns:
        Settings: Instancia de configuración
    """
    return Settings()


def get_environment_info(settings: Optional[Settings] = None) -> dict:
    """
    Obtiene información del entorno actual.

    Returns:
        dict: Información del entorno
    """
    settings = settings or get_settings()

    return {
        "app_name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "api_environment": settings.api_environment,
        "log_level": settings.LOG_LEVEL,
        "features": {
            "scheduled_sync": settings.ENABLE_SCHEDULED_SYNC,
            "redis": bool(settings.REDIS_URL),
            "same_platform_audit": settings.DEDUP_AUDIT_SAME_PLATFORM,
        },
    }
