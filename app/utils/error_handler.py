"""
Sistema de manejo de errores personalizado.

Cada excepción declara como atributos de clase su código, status HTTP y
severidad; los handlers de FastAPI (app.core.exception_handlers) las
convierten en respuestas {"error": mensaje, ...}.
"""

import logging
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    """
    Códigos de error estandardizados para la aplicación.
    """

    # Generales
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    NOT_FOUND = "NOT_FOUND"

    # Sanity y Redis
    SANITY_API_ERROR = "SANITY_API_ERROR"
    REDIS_CONNECTION_FAILED = "REDIS_CONNECTION_FAILED"

    # Integraciones
    STRIPE_API_ERROR = "STRIPE_API_ERROR"
    SHIPENGINE_API_ERROR = "SHIPENGINE_API_ERROR"
    EMAIL_DELIVERY_FAILED = "EMAIL_DELIVERY_FAILED"
    LOG_DRAIN_DELIVERY_FAILED = "LOG_DRAIN_DELIVERY_FAILED"

    # Webhooks
    INVALID_WEBHOOK_SIGNATURE = "INVALID_WEBHOOK_SIGNATURE"

    # Backfills
    BACKFILL_FAILED = "BACKFILL_FAILED"

    # Límites y disponibilidad
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AppException(Exception):
    """
    Excepción base de la aplicación.

    Los argumentos que quedan en None toman el valor declarado en la clase.
    """

    error_code = ErrorCode.UNKNOWN_ERROR
    status_code = 500
    severity = ErrorSeverity.MEDIUM
    is_retryable = False
    is_critical = False

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        severity: Optional[ErrorSeverity] = None,
        is_retryable: Optional[bool] = None,
        is_critical: Optional[bool] = None,
    ):
        """
        Inicializa la excepción.

        Args:
            message: Mensaje de error (el que ve el cliente en "error")
            error_code: Código de error estandardizado
            details: Información adicional del error
            status_code: Código HTTP asociado
            severity: Severidad del error
            is_retryable: Si la operación puede reintentarse
            is_critical: Si se reporta a los log drains
        """
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        if error_code is not None:
            self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code
        if severity is not None:
            self.severity = severity
        if is_retryable is not None:
            self.is_retryable = is_retryable
        if is_critical is not None:
            self.is_critical = is_critical
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "error_code": self.error_code.value,
            "status_code": self.status_code,
            "severity": self.severity.value,
            "is_retryable": self.is_retryable,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return f"{self.error_code.value}: {self.message}"


class ValidationException(AppException):
    """
    Payload o parámetro inválido.

    422 por defecto; los handlers usan 400 para bodies incompletos.
    """

    error_code = ErrorCode.VALIDATION_ERROR
    status_code = 422
    severity = ErrorSeverity.LOW

    def __init__(
        self,
        message: str,
        field: str,
        invalid_value: Any = None,
        expected_format: Optional[str] = None,
        status_code: int = 422,
        **kwargs,
    ):
        super().__init__(message, status_code=status_code, **kwargs)
        self.field = field
        self.invalid_value = invalid_value
        self.expected_format = expected_format
        self.details.update(
            {
                "field": field,
                "invalid_value": None if invalid_value is None else str(invalid_value),
                "expected_format": expected_format,
            }
        )


class NotFoundException(AppException):
    error_code = ErrorCode.NOT_FOUND
    status_code = 404
    severity = ErrorSeverity.LOW

    def __init__(self, message: str, resource: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.resource = resource
        self.resource_id = resource_id
        self.details.update({"resource": resource, "resource_id": resource_id})


class ConfigurationException(AppException):
    """Credencial o variable de entorno faltante; se reporta a los log drains."""

    error_code = ErrorCode.CONFIGURATION_ERROR
    severity = ErrorSeverity.HIGH
    is_critical = True

    def __init__(self, message: str, setting: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.setting = setting
        self.details["setting"] = setting


class ExternalAPIException(AppException):
    """
    Error de un servicio externo (Sanity, Stripe, ShipEngine, Resend, drains).

    El status HTTP es el del servicio (503 si no hubo respuesta). Solo se
    reintentan los 5xx, los 429 y los errores de red; un 4xx es un error del
    request y reintentarlo no cambia el resultado.
    """

    service_name = "external"
    error_code = ErrorCode.SERVICE_UNAVAILABLE

    def __init__(
        self,
        message: str,
        api_response_code: Optional[int] = None,
        endpoint: Optional[str] = None,
        rate_limited: bool = False,
        retry_after: Optional[int] = None,
        response_body: Any = None,
        **kwargs,
    ):
        kwargs.setdefault("status_code", api_response_code or 503)
        kwargs.setdefault("is_retryable", rate_limited or api_response_code is None or api_response_code >= 500)
        if rate_limited:
            kwargs.setdefault("error_code", ErrorCode.RATE_LIMIT_EXCEEDED)
            kwargs.setdefault("severity", ErrorSeverity.LOW)
        elif api_response_code and api_response_code >= 500:
            kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(message, **kwargs)

        self.api_response_code = api_response_code
        self.endpoint = endpoint
        self.rate_limited = rate_limited
        self.retry_after = retry_after
        self.response_body = response_body
        self.details.update(
            {
                "service": self.service_name,
                "api_response_code": api_response_code,
                "endpoint": endpoint,
                "rate_limited": rate_limited,
                "retry_after": retry_after,
            }
        )


class CMSAPIException(ExternalAPIException):
    service_name = "sanity"
    error_code = ErrorCode.SANITY_API_ERROR


class StripeAPIException(ExternalAPIException):
    service_name = "stripe"
    error_code = ErrorCode.STRIPE_API_ERROR


class ShippingAPIException(ExternalAPIException):
    service_name = "shipengine"
    error_code = ErrorCode.SHIPENGINE_API_ERROR


class EmailDeliveryException(ExternalAPIException):
    service_name = "resend"
    error_code = ErrorCode.EMAIL_DELIVERY_FAILED


class LogDrainDeliveryException(ExternalAPIException):
    service_name = "log_drain"
    error_code = ErrorCode.LOG_DRAIN_DELIVERY_FAILED


class WebhookSignatureException(AppException):
    """
    Webhook rechazado por firma o token.

    400 para firmas ausentes o mal formadas, 401 para secretos que no
    coinciden y 500 cuando el secreto no está configurado en el servidor.
    """

    error_code = ErrorCode.INVALID_WEBHOOK_SIGNATURE
    status_code = 401
    severity = ErrorSeverity.LOW

    def __init__(self, message: str, source: str, status_code: int = 401, **kwargs):
        super().__init__(message, status_code=status_code, **kwargs)
        self.source = source
        self.details["source"] = source


class BackfillException(AppException):
    """
    Backfill interrumpido.

    Los backfills son idempotentes, así que se sugiere reintentar (con resume)
    salvo que el llamador indique lo contrario.
    """

    error_code = ErrorCode.BACKFILL_FAILED
    severity = ErrorSeverity.HIGH

    def __init__(
        self,
        message: str,
        job: str,
        operation: str,
        failed_records: Optional[List[Dict]] = None,
        backfill_stats: Optional[Dict[str, Any]] = None,
        retry_suggested: bool = True,
        **kwargs,
    ):
        kwargs.setdefault("is_retryable", retry_suggested)
        super().__init__(message, **kwargs)
        self.job = job
        self.operation = operation
        self.failed_records = failed_records or []
        self.backfill_stats = backfill_stats or {}
        self.retry_suggested = retry_suggested
        self.details.update(
            {
                "job": job,
                "operation": operation,
                "failed_count": len(self.failed_records),
                "backfill_stats": self.backfill_stats,
                "retry_suggested": retry_suggested,
            }
        )


class RateLimitException(AppException):
    error_code = ErrorCode.RATE_LIMIT_EXCEEDED
    status_code = 429
    severity = ErrorSeverity.LOW
    is_retryable = True

    def __init__(self, message: str, limit: int, reset_time: int, retry_after: int, **kwargs):
        super().__init__(message, **kwargs)
        self.limit = limit
        self.reset_time = reset_time
        self.retry_after = retry_after
        self.details.update({"limit": limit, "reset_time": reset_time, "retry_after": retry_after})


# === FUNCIONES DE UTILIDAD ===

# Servicio mencionado en el mensaje -> excepción de ese servicio
_SERVICE_EXCEPTIONS = (
    ("sanity", CMSAPIException, "Sanity"),
    ("stripe", StripeAPIException, "Stripe"),
    ("shipengine", ShippingAPIException, "ShipEngine"),
    ("resend", EmailDeliveryException, "Resend"),
)


def convert_to_app_exception(exception: Exception, context: Optional[Dict[str, Any]] = None) -> AppException:
    """
    Convierte una excepción cualquiera en AppException.

    Los errores de conexión o timeout que nombran un servicio se convierten
    en la excepción de ese servicio (reintentable); el resto queda como
    AppException genérica con el tipo original en details.

    Args:
        exception: Excepción a convertir
        context: Contexto adicional (document_id, job, ...)

    Returns:
        AppException: Excepción convertida
    """
    context = context or {}
    message = str(exception)
    lowered = message.lower()

    if "connection" in lowered or "timeout" in lowered:
        for keyword, exception_class, label in _SERVICE_EXCEPTIONS:
            if keyword in lowered:
                return exception_class(f"{label} connection error: {message}", details=context)

    exception_type = type(exception).__name__
    return AppException(
        message=f"{exception_type}: {message}",
        details={"original_exception": exception_type, **context},
    )


def error_message(exception: BaseException) -> str:
    """Mensaje legible para respuestas `{"error": ...}` de handlers."""
    if isinstance(exception, AppException):
        return exception.message
    return str(exception) or type(exception).__name__


def log_error(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    level: int = logging.ERROR,
) -> None:
    """
    Loggea un error con su código, severidad y contexto como campos extra.

    Args:
        exception: Excepción a loggear
        context: Contexto adicional
        level: Nivel de logging
    """
    extra: Dict[str, Any] = {"exception_type": type(exception).__name__, **(context or {})}
    if isinstance(exception, AppException):
        extra.update(
            {
                "error_code": exception.error_code.value,
                "severity": exception.severity.value,
                "is_retryable": exception.is_retryable,
            }
        )
        message = f"{exception.error_code.value}: {exception.message}"
    else:
        message = f"Unhandled exception: {type(exception).__name__}: {exception}"
        extra["traceback"] = "".join(traceback.format_exception(type(exception), exception, exception.__traceback__))

    logger.log(level, message, extra=extra)


class ErrorAggregator:
    """
    Agregador de errores para procesos batch.

    Los backfills lo usan para seguir procesando documentos cuando uno falla
    y reportar los fallos al final del run; el webhook de Stripe, para
    resumir los eventos que fallaron.
    """

    def __init__(self, max_errors: Optional[int] = None):
        # Con max_errors solo se guardan los últimos N errores
        self.max_errors = max_errors
        self.errors: List[AppException] = []
        self.dropped_errors = 0
        self.total_processed = 0
        self.start_time = datetime.now(timezone.utc)

    def add_error(self, exception: Union[AppException, Exception], context: Optional[Dict] = None):
        """
        Agrega un error.

        Args:
            exception: Excepción a agregar
            context: Contexto adicional (por ejemplo document_id)
        """
        if isinstance(exception, AppException):
            exception.details.update(context or {})
        else:
            exception = convert_to_app_exception(exception, context)
        self.errors.append(exception)
        if self.max_errors is not None and len(self.errors) > self.max_errors:
            overflow = len(self.errors) - self.max_errors
            del self.errors[:overflow]
            self.dropped_errors += overflow

        if exception.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            log_error(exception, context, logging.CRITICAL if exception.is_critical else logging.ERROR)

    def increment_processed(self):
        self.total_processed += 1

    def has_errors(self) -> bool:
        return bool(self.errors)

    def get_error_messages(self) -> List[Dict[str, Any]]:
        """
        Lista compacta de fallos para incluir en resultados de backfill.

        Returns:
            List[Dict]: Entradas {id, message}
        """
        return [{"id": error.details.get("document_id"), "message": error.message} for error in self.errors]

    def get_summary(self) -> Dict[str, Any]:
        """
        Resumen del lote: procesados, fallidos, duración y errores.

        Returns:
            Dict: Resumen serializable
        """
        end_time = datetime.now(timezone.utc)
        return {
            "total_processed": self.total_processed,
            "error_count": len(self.errors) + self.dropped_errors,
            "success_count": max(self.total_processed - len(self.errors) - self.dropped_errors, 0),
            "duration_seconds": (end_time - self.start_time).total_seconds(),
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "errors": [error.to_dict() for error in self.errors],
        }
