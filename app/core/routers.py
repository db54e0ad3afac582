"""
Configuración centralizada de routers para la aplicación FastAPI.

Este módulo se encarga de registrar los routers de la API v1 y los
endpoints base (raíz, health e info).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from app.api.v1.endpoints.backfills import router as backfills_router
from app.api.v1.endpoints.email import router as email_router
from app.api.v1.endpoints.log_drains import router as log_drains_router
from app.api.v1.endpoints.shipping import router as shipping_router
from app.api.v1.endpoints.stripe import router as stripe_router
from app.api.v1.endpoints.webhooks import router as webhooks_router
from app.core.config import get_environment_info, get_settings
from app.core.health import get_health_status, get_health_status_fast
from app.core.lifespan import get_startup_info
from app.version import version_info

settings = get_settings()
logger = logging.getLogger(__name__)

API_V1_ROUTERS = [
    (backfills_router, "/api/v1/backfills", "Backfills"),
    (webhooks_router, "/api/v1/webhooks", "Webhooks"),
    (shipping_router, "/api/v1/shipping", "Shipping"),
    (email_router, "/api/v1/email", "Email"),
    (log_drains_router, "/api/v1/log-drains", "Log Drains"),
    (stripe_router, "/api/v1/stripe", "Stripe"),
]


def create_root_endpoints(app: FastAPI) -> None:
    """
    Crea endpoints raíz de la aplicación.

    Args:
        app: Instancia de FastAPI
    """

    @app.get("/", tags=["Root"], summary="API Info")
    async def root():
        """
        Endpoint raíz que proporciona información básica de la API.

        Returns:
            Dict con información de la API
        """
        return {
            "message": settings.APP_NAME,
            "description": "Sanity CMS operations backend: Stripe, ShipEngine, Resend, Auth0 and data backfills",
            "version": settings.APP_VERSION,
            "status": "running",
            "documentation": "/docs" if (settings.DEBUG or settings.ENABLE_DOCS) else "disabled",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "endpoints": {"health": "/health", **get_router_info()["base_paths"]},
        }

    @app.get("/ping", tags=["Root"], summary="Simple Ping")
    async def ping():
        return {"message": "pong", "timestamp": datetime.now(timezone.utc).isoformat()}


def create_health_endpoints(app: FastAPI) -> None:
    """
    Crea endpoints de health check.

    Args:
        app: Instancia de FastAPI
    """

    @app.get("/health", tags=["Health"], summary="Health Check (Fast)")
    async def health_check():
        """
        Health check rápido (memoria y disco, con cache).

        Returns:
            JSONResponse: 200 si está saludable, 503 si no
        """
        health_status = await get_health_status_fast()
        return JSONResponse(
            status_code=200 if health_status["overall"] else 503,
            content={
                "status": "healthy" if health_status["overall"] else "unhealthy",
                "version": settings.APP_VERSION,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "uptime": health_status.get("uptime"),
                "services": health_status["services"],
                "environment": settings.ENVIRONMENT,
                "cache_info": health_status.get("cache_info", "unknown"),
            },
        )

    @app.get("/health/complete", tags=["Health"], summary="Complete Health Check")
    async def complete_health_check():
        """
        Health check completo: Sanity, Stripe, Redis y recursos del host.

        Returns:
            JSONResponse: 200 si todo está saludable, 503 si no
        """
        health_status = await get_health_status()
        return JSONResponse(
            status_code=200 if health_status["overall"] else 503,
            content={
                "status": "healthy" if health_status["overall"] else "unhealthy",
                "version": settings.APP_VERSION,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "uptime": health_status.get("uptime"),
                "services": health_status["services"],
                "system": health_status.get("system"),
                "retry_handlers": health_status.get("retry_handlers"),
                "check_type": "complete",
            },
        )


def create_info_endpoints(app: FastAPI) -> None:
    """
    Crea endpoints informativos.

    Args:
        app: Instancia de FastAPI
    """

    @app.get("/info", tags=["Info"], summary="Environment Info")
    async def info():
        """
        Información del entorno sin secretos: integraciones configuradas y versión.
        """
        return {
            **get_environment_info(),
            "build": version_info(),
            "startup": get_startup_info(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


def configure_api_v1_routers(app: FastAPI) -> None:
    """
    Configura todos los routers de la API v1.

    Args:
        app: Instancia de FastAPI
    """
    logger.info("🔧 Configurando routers de API v1...")

    for router, prefix, tag in API_V1_ROUTERS:
        app.include_router(
            router,
            prefix=prefix,
            tags=[tag],
            responses={
                400: {"description": "Invalid request"},
                500: {"description": "Internal server error"},
            },
        )


def configure_all_routers(app: FastAPI) -> None:
    """
    Configura todos los routers de la aplicación.

    Args:
        app: Instancia de FastAPI
    """
    logger.info("🔧 Configurando todos los routers...")

    create_root_endpoints(app)
    create_health_endpoints(app)
    create_info_endpoints(app)
    configure_api_v1_routers(app)

    logger.info("✅ Todos los routers configurados correctamente")


def get_router_info() -> Dict[str, Any]:
    """
    Obtiene información sobre los routers configurados.

    Returns:
        Dict con los paths base de cada router
    """
    return {
        "api_version": "v1",
        "base_paths": {tag.lower().replace(" ", "_"): prefix for _, prefix, tag in API_V1_ROUTERS},
    }
