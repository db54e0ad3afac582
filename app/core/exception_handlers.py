"""
Manejadores de excepciones centralizados para la aplicación FastAPI.

Todas las respuestas de error comparten la forma {"error": mensaje, ...} para
que los clientes de los webhooks y de los backfills lean siempre la misma
clave.
"""

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import get_settings
from app.core.logging_config import request_id_ctx
from app.services.log_drains import get_log_drain_service
from app.utils.error_handler import (
    AppException,
    BackfillException,
    ExternalAPIException,
    RateLimitException,
    ValidationException,
    WebhookSignatureException,
)

settings = get_settings()
logger = logging.getLogger(__name__)


def _error_body(request: Request, message: Any, error_type: str, **extra) -> Dict[str, Any]:
    return {
        "error": message,
        "error_type": error_type,
        **extra,
        "path": str(request.url.path),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id_ctx.get() or request.headers.get("X-Request-ID"),
    }


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Manejador para excepciones personalizadas de la aplicación.

    Args:
        request: Request de FastAPI
        exc: Excepción personalizada de la app

    Returns:
        JSONResponse: Respuesta JSON con error formateado
    """
    logger.error(f"App Exception: {exc.message} - Code: {exc.error_code.value} - URL: {request.url}")

    if exc.is_critical:
        await report_critical_error(exc, request)

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(
            request,
            exc.message,
            "application_error",
            error_code=exc.error_code.value,
            details=exc.details if settings.DEBUG else None,
        ),
    )


async def validation_exception_handler(request: Request, exc: ValidationException) -> JSONResponse:
    """
    Manejador para errores de validación de datos.

    Los servicios eligen el status (400 para bodies incompletos, 422 por defecto).
    """
    logger.warning(f"⚠️ Validation Exception: {exc.message} - Field: {exc.field} - URL: {request.url}")

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(
            request,
            exc.message,
            "validation_error",
            error_code=exc.error_code.value,
            field=exc.field,
            invalid_value=exc.invalid_value if settings.DEBUG else None,
            expected_format=exc.expected_format,
        ),
    )


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Manejador para bodies que no cumplen el schema de Pydantic."""
    logger.warning(f"⚠️ Request validation failed: {exc.errors()} - URL: {request.url}")

    return JSONResponse(
        status_code=422,
        content=_error_body(
            request,
            "Invalid request body",
            "validation_error",
            validation_errors=[
                {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
                for error in exc.errors()
            ],
        ),
    )


async def webhook_signature_exception_handler(request: Request, exc: WebhookSignatureException) -> JSONResponse:
    """
    Manejador para webhooks rechazados por firma o token.

    Args:
        request: Request de FastAPI
        exc: Excepción de firma

    Returns:
        JSONResponse: 400/401 (500 si falta el secreto en el servidor)
    """
    logger.warning(f"⚠️ Webhook rejected ({exc.source}): {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.message, "webhook_signature_error", source=exc.source),
    )


async def external_api_exception_handler(request: Request, exc: ExternalAPIException) -> JSONResponse:
    """
    Manejador para errores de servicios externos (Sanity, Stripe, ShipEngine, Resend).

    Args:
        request: Request de FastAPI
        exc: Excepción de API externa

    Returns:
        JSONResponse: Respuesta con el código del servicio y headers de rate limit
    """
    logger.error(
        f"❌ External API Exception ({exc.service_name}): {exc.message} - "
        f"API Code: {exc.api_response_code} - "
        f"Rate Limited: {exc.rate_limited} - "
        f"URL: {request.url}"
    )

    headers = {}
    if exc.rate_limited and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(
            request,
            exc.message,
            "external_api_error",
            service=exc.service_name,
            error_code=exc.error_code.value,
            upstream_status=exc.api_response_code,
            details=exc.response_body if settings.DEBUG else None,
        ),
        headers=headers,
    )


async def backfill_exception_handler(request: Request, exc: BackfillException) -> JSONResponse:
    """
    Manejador para backfills que se interrumpen.

    Las estadísticas parciales viajan en la respuesta; el run puede retomarse
    con resume porque el checkpoint quedó guardado.
    """
    logger.error(f"❌ Backfill Exception: {exc.message} - Job: {exc.job} - Operation: {exc.operation}")
    if exc.backfill_stats:
        logger.info(f"Backfill Stats: {exc.backfill_stats}")

    await report_critical_error(exc, request)

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(
            request,
            exc.message,
            "backfill_error",
            job=exc.job,
            operation=exc.operation,
            stats=exc.backfill_stats,
            retry_suggested=exc.retry_suggested,
        ),
    )


async def rate_limit_exception_handler(request: Request, exc: RateLimitException) -> JSONResponse:
    """
    Manejador para errores de rate limiting.

    Args:
        request: Request de FastAPI
        exc: Excepción de rate limiting

    Returns:
        JSONResponse: Respuesta JSON con información de rate limit
    """
    logger.warning(f"🚫 Rate Limit Exception: {exc.message} - Limit: {exc.limit} - URL: {request.url}")

    headers = {
        "Retry-After": str(exc.retry_after),
        "X-Rate-Limit-Limit": str(exc.limit),
        "X-Rate-Limit-Reset": str(exc.reset_time),
    }

    return JSONResponse(
        status_code=429,
        content=_error_body(
            request,
            exc.message,
            "rate_limit_error",
            limit=exc.limit,
            retry_after=exc.retry_after,
            reset_time=exc.reset_time,
        ),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """
    Manejador para HTTPException de FastAPI y Starlette.

    Args:
        request: Request de FastAPI
        exc: HTTPException

    Returns:
        JSONResponse: Respuesta JSON estandarizada
    """
    logger.warning(f"HTTP Exception: {exc.status_code} - {exc.detail} - URL: {request.url}")

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.detail, "http_error", status_code=exc.status_code),
        headers=getattr(exc, "headers", None),
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Manejador global para excepciones no capturadas.

    Args:
        request: Request de FastAPI
        exc: Excepción no manejada

    Returns:
        JSONResponse: Respuesta JSON de error interno
    """
    logger.error(
        f"❌ Unhandled Exception: {str(exc)} - "
        f"Type: {type(exc).__name__} - "
        f"URL: {request.url} - "
        f"Traceback: {traceback.format_exc()}"
    )

    await report_critical_error(exc, request)

    message = "Internal server error"
    if settings.DEBUG:
        message = f"{type(exc).__name__}: {str(exc)}"

    return JSONResponse(
        status_code=500,
        content=_error_body(
            request,
            message,
            "internal_server_error",
            traceback=traceback.format_exc() if settings.DEBUG else None,
        ),
    )


def configure_exception_handlers(app: FastAPI) -> None:
    """
    Configura todos los manejadores de excepciones de la aplicación.

    Args:
        app: Instancia de FastAPI
    """
    logger.info("🔧 Configurando manejadores de excepciones...")

    # Manejadores específicos (orden de especificidad)
    app.add_exception_handler(ValidationException, validation_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(WebhookSignatureException, webhook_signature_exception_handler)
    app.add_exception_handler(RateLimitException, rate_limit_exception_handler)
    app.add_exception_handler(BackfillException, backfill_exception_handler)
    app.add_exception_handler(ExternalAPIException, external_api_exception_handler)
    app.add_exception_handler(AppException, app_exception_handler)

    # Manejadores HTTP estándar
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)

    # Manejador global (debe ser el último)
    app.add_exception_handler(Exception, global_exception_handler)

    logger.info("✅ Manejadores de excepciones configurados correctamente")


# Funciones auxiliares


async def report_critical_error(exc: Exception, request: Request) -> None:
    """
    Registra un functionLog de error y lo reenvía a los log drains.

    Args:
        exc: Excepción que generó el reporte
        request: Request que causó el error
    """
    if not settings.sanity_configured:
        return

    try:
        await get_log_drain_service().record_function_log(
            name="api",
            status="error",
            message=f"{type(exc).__name__}: {getattr(exc, 'message', str(exc))}",
            metadata={
                "path": request.url.path,
                "method": request.method,
                "requestId": request_id_ctx.get(),
            },
        )
    except Exception as report_error:
        logger.error(f"❌ Error reporting critical error to log drains: {report_error}")
