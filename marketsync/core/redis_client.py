"""
Cliente Redis compartido.

Redis guarda el estado que debe sobrevivir entre procesos: estados de
circuit breaker, locks de sincronización y respaldos de credenciales.
"""

import logging
from typing import Optional

import redis.asyncio as redis

from marketsync.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[redis.Redis] = None


def get_redis_client(settings: Optional[Settings] = None) -> redis.Redis:
    """
    Returns a Redis client instance.

    Returns:
        redis.Redis: Redis client instance

    Raises:
        RuntimeError: If Redis URL is not configured
    """
    global _redis_client

    settings = settings or get_settings()
    if not settings.REDIS_URL:
        raise RuntimeError("Redis URL not configured")

    if _redis_client is None:
        # Connection is established lazily on the first command
        config = settings.redis_config
        _redis_client = redis.from_url(config.pop("url"), encoding="utf-8", **config)
        logger.debug("Redis client instance created")

    return _redis_client


async def test_redis_connection(client: Optional[redis.Redis] = None) -> bool:
    """
    Verifica la conectividad con Redis.

    Returns:
        bool: True si la conexión es exitosa, False en caso contrario
    """
    try:
        client = client or get_redis_client()
        await client.ping()
        logger.info("Redis connection OK")
        return True
    except (RuntimeError, redis.RedisError, OSError) as e:
        logger.warning(f"Redis connection test failed: {e}")
        return False


async def close_redis():
    """
    Cierra el cliente Redis global.
    """
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
