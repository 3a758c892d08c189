"""
Almacén de credenciales de plataformas.

Las credenciales llegan desde configuración externa, se sanitizan, se
validan contra el modelo de su plataforma, se cifran con Fernet y se
guardan en el PlatformConfig. Las lecturas se cachean 5 minutos por
plataforma; store/rotate invalidan la caché. Ningún valor secreto llega
a un log: todo pasa por redact_credentials y los secretos conocidos se
registran en el filtro de logging.
"""

import base64
import dataclasses
import hashlib
import json
import logging
import re
import time
from typing import Any, Callable, Mapping, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from marketsync.core.cache_manager import CacheBackend
from marketsync.core.config import Settings, get_settings
from marketsync.db.interfaces import IPlatformConfigRepository
from marketsync.domain.models import BaseCredentials, PlatformConfig, PlatformType, parse_credentials
from marketsync.utils.distributed_lock import KeyedLocks
from marketsync.utils.error_handler import ValidationException
from marketsync.utils.redaction import redact_credentials, register_secrets

logger = logging.getLogger(__name__)

# Claves de configuración que viajan junto a las credenciales pero no son parte de ellas
NON_CREDENTIAL_KEYS = ("sync_interval", "is_active")

BACKUP_KEY_PREFIX = "platform_credentials_backup"

_TAG_PATTERN = re.compile(r"<[^>]*>")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
# Caracteres fuera del conjunto seguro para URLs
_URL_UNSAFE = re.compile(r"[^A-Za-z0-9$\-_.+!*'(),{}|\\^~\[\]`#%\";/?:@&=]")


def sanitize_credentials(credentials: Mapping[str, Any]) -> dict[str, Any]:
    """
    Elimina contenido potencialmente peligroso de los valores string.

    Recorta espacios, quita etiquetas HTML y caracteres de control; los
    campos de URL o dominio quedan restringidos a caracteres seguros.

    Args:
        credentials: Campos tal como llegan de la configuración

    Returns:
        dict: Copia sanitizada
    """
    sanitized: dict[str, Any] = {}
    for key, value in credentials.items():
        if isinstance(value, str):
            value = _CONTROL_CHARS.sub("", _TAG_PATTERN.sub("", value.strip()))
            if "url" in key or "domain" in key:
                value = _URL_UNSAFE.sub("", value)
        sanitized[key] = value
    return sanitized


def build_fernet(settings: Settings) -> Fernet:
    """
    Construye el cifrador de credenciales.

    Usa CREDENTIAL_ENCRYPTION_KEY si existe; si no, deriva una clave
    de SECRET_KEY con SHA-256.

    Raises:
        ValidationException: Si la clave configurada no es una clave Fernet válida
    """
    key = settings.CREDENTIAL_ENCRYPTION_KEY
    if not key:
        key = base64.urlsafe_b64encode(hashlib.sha256(settings.SECRET_KEY.encode("utf-8")).digest()).decode()
    try:
        return Fernet(key)
    except (ValueError, TypeError) as e:
        raise ValidationException(
            message="CREDENTIAL_ENCRYPTION_KEY is not a valid Fernet key",
            field="CREDENTIAL_ENCRYPTION_KEY",
            expected_format="32 url-safe base64-encoded bytes",
        ) from e


class CredentialStore:
    """
    Gestiona credenciales cifradas por plataforma.

    Args:
        config_repository: Persistencia de PlatformConfig
        cache: Caché compartida (respaldos de rotación)
        settings: Configuración de la aplicación
        clock: Fuente de tiempo monotónica para la caché de lectura
    """

    def __init__(
        self,
        config_repository: IPlatformConfigRepository,
        cache: CacheBackend,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.config_repository = config_repository
        self.cache = cache
        self.cache_ttl = self.settings.CREDENTIAL_CACHE_TTL
        self.backup_ttl = self.settings.CREDENTIAL_BACKUP_TTL
        self._fernet = build_fernet(self.settings)
        self._clock = clock
        self._locks = KeyedLocks()
        self._cached: dict[PlatformType, tuple[float, BaseCredentials]] = {}

    # === VALIDACIÓN ===

    def validate(self, platform: Union[PlatformType, str], credentials: Mapping[str, Any]) -> BaseCredentials:
        """
        Valida credenciales sin almacenarlas.

        Args:
            platform: Plataforma que define el modelo
            credentials: Campos de credenciales

        Returns:
            BaseCredentials: Credenciales tipadas

        Raises:
            ValidationException: Si la plataforma o algún campo no es válido
        """
        platform = self._parse_platform(platform)
        data = {k: v for k, v in credentials.items() if k not in NON_CREDENTIAL_KEYS and k != "platform"}
        try:
            return parse_credentials(platform, sanitize_credentials(data))
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ())) or "credentials"
            # Nunca incluir el valor recibido: puede ser un secreto
            raise ValidationException(
                message=f"Invalid {platform.value} credentials: {field}: {first.get('msg')}",
                field=field,
                expected_format=first.get("msg"),
                details={"platform": platform.value, "error_count": e.error_count()},
            ) from None

    # === ESCRITURA ===

    async def store(
        self,
        platform: Union[PlatformType, str],
        credentials: Union[Mapping[str, Any], BaseCredentials],
        sync_interval: Optional[int] = None,
        is_active: Optional[bool] = None,
    ) -> PlatformConfig:
        """
        Valida, cifra y guarda las credenciales de una plataforma.

        Args:
            platform: Plataforma destino
            credentials: Campos de credenciales (o modelo ya validado)
            sync_interval: Intervalo de sincronización en segundos
            is_active: Si la plataforma participa en la sincronización

        Returns:
            PlatformConfig: Configuración actualizada

        Raises:
            ValidationException: Si las credenciales o el intervalo no son válidos
        """
        platform = self._parse_platform(platform)
        validated, token, sync_interval, is_active = self._seal(platform, credentials, sync_interval, is_active)

        async with self._locks(platform.value):
            config = await self._upsert_config(platform, token, sync_interval, is_active)
            self._cached.pop(platform, None)

        self._log_stored(platform, validated)
        return config

    async def rotate(
        self, platform: Union[PlatformType, str], new_credentials: Mapping[str, Any]
    ) -> PlatformConfig:
        """
        Reemplaza credenciales guardando un respaldo de las actuales.

        El respaldo cifrado queda en la caché compartida durante
        CREDENTIAL_BACKUP_TTL segundos para permitir rollback().

        Raises:
            ValidationException: Si las nuevas credenciales no son válidas
        """
        platform = self._parse_platform(platform)
        validated, token, sync_interval, is_active = self._seal(platform, new_credentials)

        # Backup and overwrite under one lock so concurrent rotations serialize
        async with self._locks(platform.value):
            current = await self.config_repository.get(platform)
            if current and current.encrypted_credentials:
                await self.cache.set(self._backup_key(platform), current.encrypted_credentials, self.backup_ttl)
            config = await self._upsert_config(platform, token, sync_interval, is_active)
            self._cached.pop(platform, None)

        self._log_stored(platform, validated)
        logger.info(f"🔄 Rotated credentials for {platform.value} (backup kept {self.backup_ttl}s)")
        return config

    async def rollback(self, platform: Union[PlatformType, str]) -> bool:
        """
        Restaura las credenciales respaldadas por la última rotación.

        Returns:
            bool: True si había un respaldo válido y se restauró
        """
        platform = self._parse_platform(platform)
        backup_key = self._backup_key(platform)
        token = await self.cache.get(backup_key)
        if not token:
            logger.warning(f"No credential backup available for {platform.value}")
            return False

        if self._decrypt(platform, token) is None:
            return False

        async with self._locks(platform.value):
            config = await self.config_repository.get(platform)
            if config is None:
                return False
            config.encrypted_credentials = token
            await self.config_repository.save(config)
            self._cached.pop(platform, None)

        await self.cache.delete(backup_key)
        logger.info(f"🔄 Restored backed up credentials for {platform.value}")
        return True

    def invalidate(self, platform: Union[PlatformType, str]) -> None:
        """Descarta la copia en caché de una plataforma."""
        self._cached.pop(self._parse_platform(platform), None)

    # === LECTURA ===

    async def get(self, platform: Union[PlatformType, str]) -> Optional[BaseCredentials]:
        """
        Obtiene las credenciales descifradas de una plataforma.

        Returns:
            BaseCredentials | None: Credenciales tipadas o None si no hay
        """
        platform = self._parse_platform(platform)
        async with self._locks(platform.value):
            cached = self._cached.get(platform)
            if cached and cached[0] > self._clock():
                return cached[1]

            config = await self.config_repository.get(platform)
            if config is None or not config.encrypted_credentials:
                self._cached.pop(platform, None)
                return None

            credentials = self._decrypt(platform, config.encrypted_credentials)
            if credentials is not None:
                self._cached[platform] = (self._clock() + self.cache_ttl, credentials)
                register_secrets(credentials.secret_values())
            return credentials

    async def has_credentials(self, platform: Union[PlatformType, str]) -> bool:
        return await self.get(platform) is not None

    async def get_configured_platforms(self) -> list[PlatformType]:
        """Plataformas activas con credenciales almacenadas."""
        configs = await self.config_repository.list_active()
        return [c.platform_type for c in configs if c.has_credentials]

    # === INTERNOS ===

    def _seal(
        self,
        platform: PlatformType,
        credentials: Union[Mapping[str, Any], BaseCredentials],
        sync_interval: Optional[int] = None,
        is_active: Optional[bool] = None,
    ) -> tuple[BaseCredentials, str, Optional[int], Optional[bool]]:
        """Valida y cifra; separa sync_interval/is_active si vienen en el mapping."""
        if isinstance(credentials, BaseCredentials):
            credentials = credentials.to_plain_dict()
        else:
            sync_interval = sync_interval if sync_interval is not None else credentials.get("sync_interval")
            is_active = is_active if is_active is not None else credentials.get("is_active")

        validated = self.validate(platform, credentials)
        return validated, self._encrypt(validated), sync_interval, is_active

    def _log_stored(self, platform: PlatformType, credentials: BaseCredentials) -> None:
        register_secrets(credentials.secret_values())
        logger.info(f"🔒 Stored credentials for {platform.value}")
        logger.debug(f"Credential fields for {platform.value}: {redact_credentials(credentials.to_plain_dict())}")

    async def _upsert_config(
        self,
        platform: PlatformType,
        token: str,
        sync_interval: Optional[int],
        is_active: Optional[bool],
    ) -> PlatformConfig:
        config = await self.config_repository.get(platform)
        try:
            if config is None:
                config = PlatformConfig(
                    platform_type=platform,
                    encrypted_credentials=token,
                    sync_interval=(
                        sync_interval if sync_interval is not None else self.settings.DEFAULT_SYNC_INTERVAL_SECONDS
                    ),
                    is_active=True if is_active is None else bool(is_active),
                )
            else:
                config.encrypted_credentials = token
                if sync_interval is not None:
                    config = dataclasses.replace(config, sync_interval=sync_interval)
                if is_active is not None:
                    config.is_active = bool(is_active)
        except ValueError as e:
            raise ValidationException(
                message=str(e),
                field="sync_interval",
                invalid_value=sync_interval,
                expected_format="integer between 60 and 86400",
            ) from e
        return await self.config_repository.save(config)

    def _encrypt(self, credentials: BaseCredentials) -> str:
        payload = json.dumps(credentials.to_plain_dict(), sort_keys=True)
        return self._fernet.encrypt(payload.encode("utf-8")).decode("ascii")

    def _decrypt(self, platform: PlatformType, token: str) -> Optional[BaseCredentials]:
        try:
            data = json.loads(self._fernet.decrypt(token.encode("ascii")))
            return parse_credentials(platform, {k: v for k, v in data.items() if k != "platform"})
        except InvalidToken:
            logger.error(f"❌ Stored credentials for {platform.value} cannot be decrypted with the current key")
            return None
        except (ValueError, ValidationError) as e:
            logger.error(f"❌ Stored credentials for {platform.value} are no longer valid: {type(e).__name__}")
            return None

    @staticmethod
    def _backup_key(platform: PlatformType) -> str:
        return f"{BACKUP_KEY_PREFIX}:{platform.value}"

    @staticmethod
    def _parse_platform(platform: Union[PlatformType, str]) -> PlatformType:
        try:
            return PlatformType.parse(platform)
        except ValueError as e:
            raise ValidationException(
                message=str(e),
                field="platform",
                invalid_value=platform,
                expected_format=", ".join(p.value for p in PlatformType),
            ) from None
