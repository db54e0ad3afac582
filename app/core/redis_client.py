"""
Cliente Redis para checkpoints de backfill y health checks.

Redis es opcional: sin REDIS_URL los checkpoints usan solo archivos JSON
y el health check reporta el componente como no configurado.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.core.config import get_settings

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[redis.Redis] = None


def is_redis_configured() -> bool:
    """Indica si hay REDIS_URL configurado."""
    return bool(get_settings().REDIS_URL)


def get_redis_client() -> redis.Redis:
    """
    Returns a Redis client instance.

    Returns:
        redis.Redis: Redis client instance

    Raises:
        RuntimeError: If Redis URL is not configured
    """
    global _redis_client

    settings = get_settings()
    if not settings.REDIS_URL:
        raise RuntimeError("Redis URL not configured")

    if _redis_client is None:
        # La conexión real se abre en el primer comando
        _redis_client = redis.from_url(settings.REDIS_URL, **settings.redis_config)
        logger.debug("Redis client instance created")

    return _redis_client


async def test_redis_connection() -> bool:
    """
    Verifica la conectividad con Redis.

    Returns:
        bool: True si la conexión es exitosa, False en caso contrario
    """
    if not is_redis_configured():
        logger.warning("Redis URL not configured")
        return False

    try:
        await get_redis_client().ping()
        logger.info("✅ Redis connection OK")
        return True
    except (RedisError, OSError) as e:
        logger.error(f"Redis connection test failed: {e}")
        return False


async def get_cache(key: str) -> Optional[str]:
    """
    Obtiene un valor del cache.

    Args:
        key: Clave del cache

    Returns:
        Optional[str]: Valor del cache o None si no existe
    """
    return await get_redis_client().get(key)


async def set_cache(key: str, value: str, expire: Optional[int] = None) -> bool:
    """
    Establece un valor en el cache.

    Args:
        key: Clave del cache
        value: Valor a almacenar
        expire: Tiempo de expiración en segundos

    Returns:
        bool: True si fue exitoso
    """
    return bool(await get_redis_client().set(key, value, ex=expire))


async def delete_cache(key: str) -> bool:
    """
    Elimina un valor del cache.

    Returns:
        bool: True si la clave existía
    """
    return bool(await get_redis_client().delete(key))


async def initialize_redis():
    """
    Inicializa Redis si está configurado. Un fallo no detiene la aplicación.
    """
    if not is_redis_configured():
        logger.info("Redis not configured, checkpoints will use local files only")
        return
    await test_redis_connection()


async def close_redis():
    """
    Cierra el cliente Redis global.
    """
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis client closed")
