"""
Gestión del ciclo de vida de la aplicación FastAPI.

Este módulo maneja los eventos de startup y shutdown de la aplicación,
incluyendo verificación de configuración, conexiones y cierre de clientes.
"""

import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from app.core.config import get_missing_credentials, get_settings, validate_required_settings
from app.core.logging_config import setup_logging
from app.core.redis_client import close_redis, initialize_redis, test_redis_connection
from app.db.sanity_client import close_sanity_client, get_sanity_client
from app.db.shipengine_client import close_shipengine_client
from app.utils.error_handler import AppException

settings = get_settings()
logger = logging.getLogger(__name__)

_startup_info: Dict[str, Any] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Gestión del ciclo de vida de la aplicación.
    Maneja eventos de startup y shutdown de manera ordenada.

    Args:
        app: Instancia de FastAPI
    """
    # === STARTUP ===
    logger.info(f"🚀 Iniciando {settings.APP_NAME}...")

    try:
        # 1. Configurar logging
        await startup_configure_logging()

        # 2. Verificar configuración
        await startup_verify_configuration()

        # 3. Verificar conexiones
        await startup_verify_connections()

        logger.info("🎉 Aplicación iniciada correctamente")

    except Exception as e:
        logger.error(f"❌ Error durante el startup: {e}")
        await shutdown_close_connections()
        sys.exit(1)

    # === YIELD (aplicación corriendo) ===
    yield

    # === SHUTDOWN ===
    logger.info(f"🛑 Cerrando {settings.APP_NAME}...")

    try:
        await shutdown_close_connections()
        logger.info("👋 Aplicación cerrada correctamente")
    except Exception as e:
        logger.error(f"❌ Error durante el shutdown: {e}")


# === FUNCIONES DE STARTUP ===


async def startup_configure_logging():
    """Configura el sistema de logging."""
    setup_logging()
    logger.info("✅ Sistema de logging configurado")


async def startup_verify_configuration():
    """
    Verifica que la configuración sea válida.

    Raises:
        ValueError: Si falta la configuración de Sanity en producción
    """
    complete = validate_required_settings()
    missing = get_missing_credentials()
    _startup_info["missing_credentials"] = missing

    if complete:
        logger.info("✅ Configuración verificada")
    else:
        logger.warning(f"⚠️ Credenciales faltantes: {missing} - los endpoints que las usan responderán con error")


async def startup_verify_connections():
    """
    Verifica conexiones a servicios externos.

    Sanity es crítico solo en producción; Redis siempre es opcional porque los
    checkpoints de backfill tienen respaldo en archivos locales.
    """
    connection_results: Dict[str, bool] = {}

    if settings.sanity_configured:
        try:
            await get_sanity_client().initialize(test_connection=True)
            connection_results["sanity"] = True
            logger.info("✅ Conexión a Sanity verificada")
        except AppException as e:
            connection_results["sanity"] = False
            if settings.is_production:
                raise
            logger.warning(f"⚠️ Sanity no disponible: {e.message}")
    else:
        connection_results["sanity"] = False

    if settings.REDIS_URL:
        await initialize_redis()
        connection_results["redis"] = await test_redis_connection()
        if connection_results["redis"]:
            logger.info("✅ Conexión a Redis verificada")
        else:
            logger.warning("⚠️ Conexión a Redis falló (no crítico)")

    _startup_info["connections"] = connection_results
    _startup_info["started_at"] = datetime.now(timezone.utc).isoformat()


# === FUNCIONES DE SHUTDOWN ===


async def shutdown_close_connections():
    """Cierra las sesiones HTTP y el cliente Redis."""
    await close_sanity_client()
    await close_shipengine_client()
    await close_redis()
    logger.info("✅ Conexiones cerradas")


def get_startup_info() -> Dict[str, Any]:
    """
    Obtiene información del último startup.

    Returns:
        Dict: Conexiones verificadas, credenciales faltantes y hora de inicio
    """
    return {"app_name": settings.APP_NAME, "environment": settings.ENVIRONMENT, **_startup_info}
