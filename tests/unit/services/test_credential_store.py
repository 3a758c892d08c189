"""Tests unitarios para el almacén cifrado de credenciales."""

import asyncio

import pytest

from marketsync.core.cache_manager import MemoryCache
from marketsync.db import InMemoryPlatformConfigRepository
from marketsync.domain.models import PlatformType
from marketsync.domain.models.credentials import ShopifyCredentials
from marketsync.services.credential_store import CredentialStore, build_fernet, sanitize_credentials
from marketsync.utils.error_handler import ValidationException

SHOPIFY = {
    "shop_domain": "demo.myshopify.com",
    "access_token": "shpat_" + "a" * 32,
    "api_key": "k" * 32,
}


def make_store(settings, clock=None):
    repository = InMemoryPlatformConfigRepository()
    kwargs = {"clock": clock} if clock else {}
    return CredentialStore(repository, MemoryCache(), settings=settings, **kwargs), repository


class TestCredentialStoreValidation:
    """Tests para la validación de credenciales."""

    def test_invalid_credentials_raise_without_leaking_values(self, settings):
        """El error de validación no debe incluir el valor recibido."""
        store, _ = make_store(settings)

        with pytest.raises(ValidationException) as exc_info:
            store.validate("shopify", {**SHOPIFY, "access_token": "not-a-shopify-token-secret"})

        assert "not-a-shopify-token-secret" not in str(exc_info.value.to_dict())
        assert exc_info.value.field == "access_token"

    def test_unknown_platform_is_rejected(self, settings):
        """Una plataforma desconocida es un error de validación."""
        store, _ = make_store(settings)

        with pytest.raises(ValidationException):
            store.validate("ebay", {})

    def test_sanitize_strips_tags_and_control_chars(self):
        """Debe quitar etiquetas HTML y caracteres de control."""
        cleaned = sanitize_credentials({"shop_domain": " <b>demo</b>.myshopify.com\x00 ", "sync_interval": 600})

        assert cleaned == {"shop_domain": "demo.myshopify.com", "sync_interval": 600}

    def test_invalid_encryption_key(self, settings):
        """Una clave Fernet inválida debe rechazarse al construir el cifrador."""
        settings.CREDENTIAL_ENCRYPTION_KEY = "too-short"

        with pytest.raises(ValidationException):
            build_fernet(settings)


class TestCredentialStoreStorage:
    """Tests para store/get/rotate/rollback."""

    @pytest.mark.asyncio
    async def test_store_encrypts_and_get_decrypts(self, settings):
        """Las credenciales se guardan cifradas y se leen tipadas."""
        store, repository = make_store(settings)

        config = await store.store(PlatformType.SHOPIFY, {**SHOPIFY, "sync_interval": 900})
        credentials = await store.get("shopify")

        assert config.sync_interval == 900
        assert SHOPIFY["access_token"] not in (await repository.get(PlatformType.SHOPIFY)).encrypted_credentials
        assert isinstance(credentials, ShopifyCredentials)
        assert credentials.access_token.get_secret_value() == SHOPIFY["access_token"]
        assert await store.get_configured_platforms() == [PlatformType.SHOPIFY]

    @pytest.mark.asyncio
    async def test_invalid_sync_interval_is_validation_error(self, settings):
        """Un intervalo fuera de rango debe rechazarse."""
        store, _ = make_store(settings)

        with pytest.raises(ValidationException):
            await store.store(PlatformType.SHOPIFY, SHOPIFY, sync_interval=10)

    @pytest.mark.asyncio
    async def test_reads_are_cached_until_ttl(self, settings, clock):
        """Las lecturas se cachean por CREDENTIAL_CACHE_TTL segundos."""
        store, repository = make_store(settings, clock)
        await store.store(PlatformType.SHOPIFY, SHOPIFY)
        await store.get(PlatformType.SHOPIFY)

        config = await repository.get(PlatformType.SHOPIFY)
        config.encrypted_credentials = None
        await repository.save(config)

        assert await store.get(PlatformType.SHOPIFY) is not None
        clock.advance(settings.CREDENTIAL_CACHE_TTL + 1)
        assert await store.get(PlatformType.SHOPIFY) is None

    @pytest.mark.asyncio
    async def test_store_invalidates_cache(self, settings):
        """store() debe invalidar la copia en caché."""
        store, _ = make_store(settings)
        await store.store(PlatformType.SHOPIFY, SHOPIFY)
        await store.get(PlatformType.SHOPIFY)

        await store.store(PlatformType.SHOPIFY, {**SHOPIFY, "location_id": "42"})

        assert (await store.get(PlatformType.SHOPIFY)).location_id == "42"

    @pytest.mark.asyncio
    async def test_rotate_and_rollback(self, settings):
        """rotate() guarda un respaldo que rollback() restaura."""
        store, _ = make_store(settings)
        await store.store(PlatformType.SHOPIFY, SHOPIFY)

        await store.rotate(PlatformType.SHOPIFY, {**SHOPIFY, "access_token": "shpat_" + "b" * 32})
        rotated = await store.get(PlatformType.SHOPIFY)
        restored = await store.rollback(PlatformType.SHOPIFY)

        assert rotated.access_token.get_secret_value() == "shpat_" + "b" * 32
        assert restored is True
        assert (await store.get(PlatformType.SHOPIFY)).access_token.get_secret_value() == SHOPIFY["access_token"]
        assert await store.rollback(PlatformType.SHOPIFY) is False

    @pytest.mark.asyncio
    async def test_concurrent_rotations_keep_a_consistent_backup(self, settings):
        """Dos rotaciones simultáneas deben comportarse como si fueran secuenciales."""
        store, _ = make_store(settings)
        await store.store(PlatformType.SHOPIFY, SHOPIFY)
        tokens = {"shpat_" + "b" * 32, "shpat_" + "c" * 32}

        await asyncio.gather(
            *(store.rotate(PlatformType.SHOPIFY, {**SHOPIFY, "access_token": token}) for token in sorted(tokens))
        )
        final = (await store.get(PlatformType.SHOPIFY)).access_token.get_secret_value()
        assert await store.rollback(PlatformType.SHOPIFY) is True
        restored = (await store.get(PlatformType.SHOPIFY)).access_token.get_secret_value()

        assert final in tokens
        assert restored == (tokens - {final}).pop()

    @pytest.mark.asyncio
    async def test_undecryptable_token_returns_none(self, settings):
        """Un token que no descifra con la clave actual devuelve None."""
        store, repository = make_store(settings)
        await store.store(PlatformType.SHOPIFY, SHOPIFY)
        config = await repository.get(PlatformType.SHOPIFY)
        config.encrypted_credentials = "gAAAAABnot-a-valid-token"
        await repository.save(config)
        store.invalidate(PlatformType.SHOPIFY)

        assert await store.get(PlatformType.SHOPIFY) is None
        assert await store.has_credentials(PlatformType.SHOPIFY) is False
