"""
Configuración personalizada de OpenAPI/Swagger para la aplicación FastAPI.

Agrega tags descriptivos, servidores por entorno y el esquema de seguridad
bearer que usan los backfills.
"""

import logging
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi

from app.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


def get_custom_openapi_schema(app: FastAPI) -> Dict[str, Any]:
    """
    Genera esquema OpenAPI personalizado con información adicional.

    Args:
        app: Instancia de FastAPI

    Returns:
        Dict: Esquema OpenAPI personalizado
    """
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )

    openapi_schema["servers"] = get_server_configuration()
    openapi_schema["tags"] = get_custom_tags()
    components = openapi_schema.setdefault("components", {})
    components["securitySchemes"] = get_security_schemes()

    openapi_schema["x-app-info"] = {
        "environment": settings.ENVIRONMENT,
        "version": settings.APP_VERSION,
        "integrations": {
            "sanity": settings.sanity_configured,
            "stripe": settings.stripe_configured,
            "shipengine": bool(settings.SHIPENGINE_API_KEY),
            "resend": bool(settings.RESEND_API_KEY),
        },
    }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


def get_server_configuration() -> List[Dict[str, str]]:
    """Servidores listados en la documentación."""
    servers = [{"url": f"http://localhost:{settings.PORT}", "description": "Local development"}]
    for host in settings.allowed_hosts:
        servers.append({"url": f"https://{host}", "description": settings.ENVIRONMENT})
    return servers


def get_custom_tags() -> List[Dict[str, str]]:
    return [
        {"name": "Root", "description": "API info and ping"},
        {"name": "Health", "description": "Health checks for Sanity, Stripe, Redis and host resources"},
        {"name": "Info", "description": "Environment and build information"},
        {"name": "Backfills", "description": "Idempotent, cursor-paginated data migrations with dry-run"},
        {"name": "Webhooks", "description": "Stripe, ShipEngine and Auth0 callbacks"},
        {"name": "Shipping", "description": "ShipEngine rate quotes"},
        {"name": "Email", "description": "Customer emails and open/click tracking"},
        {"name": "Log Drains", "description": "Log drain CRUD and all-settled fan-out"},
        {"name": "Stripe", "description": "Order reprocessing from Stripe"},
    ]


def get_security_schemes() -> Dict[str, Any]:
    return {
        "BackfillSecret": {
            "type": "http",
            "scheme": "bearer",
            "description": "BACKFILL_SECRET as bearer token (or ?token=...)",
        }
    }


def configure_openapi(app: FastAPI) -> None:
    """
    Configura la documentación OpenAPI personalizada.

    Args:
        app: Instancia de FastAPI
    """
    app.openapi = lambda: get_custom_openapi_schema(app)
    logger.info("✅ OpenAPI configurado")
