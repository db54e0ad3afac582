"""
Configuración del sistema de logging.

Consola con colores en desarrollo, archivos rotativos opcionales y un archivo
JSON en producción. El request id del middleware y el contexto de los
backfills (job, dry run) viajan en cada registro a través de ContextVars, así
que sobreviven a los awaits de handlers concurrentes.
"""

import json
import logging
import logging.config
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from app.core.config import get_settings

settings = get_settings()

# Request id del request HTTP en curso (lo fija el middleware de logging)
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
# Campos agregados por LogContext (backfill_job, dry_run, ...)
log_context_ctx: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DETAILED_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(module)s.%(funcName)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Atributos propios de LogRecord que no se copian a "extra"
_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

# Niveles por logger; None = DEBUG en modo debug, INFO si no
LOGGER_LEVELS: Dict[str, Optional[str]] = {
    "app.services.backfills": None,
    "app.webhooks": "INFO",
    "app.api": "INFO",
    "app.db": "WARNING",
    "stripe": "WARNING",
    "httpx": "WARNING",
    "urllib3": "WARNING",
    "aiohttp.access": "WARNING",
    "aiohttp.client": "WARNING",
}


class ColoredFormatter(logging.Formatter):
    """Colorea el nivel cuando la salida es una terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        formatted = super().format(record)
        if not sys.stdout.isatty():
            return formatted
        color = self.COLORS.get(record.levelname)
        if not color:
            return formatted
        return formatted.replace(record.levelname, f"{color}{record.levelname}{self.RESET}", 1)


class StructuredFormatter(logging.Formatter):
    """
    Un objeto JSON por línea.

    Los campos pasados con extra= (y los de LogContext) se agrupan bajo
    "extra"; request_id y backfill_job quedan en el primer nivel para poder
    filtrar por ellos.
    """

    def format(self, record):
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
        }

        extra = {key: value for key, value in vars(record).items() if key not in _RECORD_FIELDS}
        for promoted in ("request_id", "backfill_job"):
            if promoted in extra:
                entry[promoted] = extra.pop(promoted)
        if extra:
            entry["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, ensure_ascii=False, default=str)


class ContextFilter(logging.Filter):
    """Copia el request id y el contexto activo de LogContext al registro."""

    def filter(self, record):
        request_id = request_id_ctx.get()
        if request_id and not hasattr(record, "request_id"):
            record.request_id = request_id
        for key, value in log_context_ctx.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)

        name = record.name
        if ".backfills" in name:
            record.operation_type = "backfill"
        elif "webhook" in name:
            record.operation_type = "webhook"
        return True


def _rotating_file(path: str, level: str, formatter: str) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "formatter": formatter,
        "filename": path,
        "maxBytes": settings.LOG_MAX_SIZE_MB * 1024 * 1024,
        "backupCount": settings.LOG_BACKUP_COUNT,
        "encoding": "utf-8",
        "filters": ["context"],
    }


def get_logging_configuration() -> Dict[str, Any]:
    """
    Arma el dict para logging.config.dictConfig.

    Returns:
        Dict: Configuración con consola y, si LOG_FILE_PATH está definido,
        archivo general, archivo de errores y (en producción) archivo JSON
    """
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": settings.LOG_LEVEL,
            "formatter": "colored" if settings.DEBUG else "standard",
            "stream": "ext://sys.stdout",
            "filters": ["context"],
        }
    }

    log_path = settings.LOG_FILE_PATH
    if log_path:
        base = log_path[:-4] if log_path.endswith(".log") else log_path
        handlers["file"] = _rotating_file(log_path, settings.LOG_LEVEL, "detailed")
        handlers["error_file"] = _rotating_file(f"{base}_errors.log", "ERROR", "detailed")
        if settings.is_production:
            handlers["json_file"] = _rotating_file(f"{base}.json", "INFO", "json")

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"context": {"()": ContextFilter}},
        "formatters": {
            "standard": {"format": LOG_FORMAT, "datefmt": DATE_FORMAT},
            "detailed": {"format": DETAILED_FORMAT, "datefmt": DATE_FORMAT},
            "colored": {"()": ColoredFormatter, "format": LOG_FORMAT, "datefmt": DATE_FORMAT},
            "json": {"()": StructuredFormatter},
        },
        "handlers": handlers,
        "loggers": {
            "uvicorn.access": {"level": "INFO", "handlers": ["console"], "propagate": False},
            "uvicorn.error": {"level": "INFO", "handlers": ["console"], "propagate": False},
        },
        "root": {"level": settings.LOG_LEVEL, "handlers": list(handlers)},
    }


def setup_logging() -> None:
    """Aplica la configuración de logging de la aplicación."""
    if settings.LOG_FILE_PATH:
        Path(settings.LOG_FILE_PATH).parent.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig(get_logging_configuration())

    default_level = "DEBUG" if settings.DEBUG else "INFO"
    for name, level in LOGGER_LEVELS.items():
        logging.getLogger(name).setLevel(level or default_level)

    logger = logging.getLogger(__name__)
    logger.info(f"📝 Logging configurado - Nivel: {settings.LOG_LEVEL}")
    if settings.LOG_FILE_PATH:
        logger.info(f"📁 Logs en: {settings.LOG_FILE_PATH}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_backfill_operation(job: str, operation: str, dry_run: bool, **kwargs):
    """
    Registra una fase de un backfill con sus contadores como campos extra.

    Args:
        job: Nombre del backfill (orders, invoices, ...)
        operation: Fase (start, complete, failed)
        dry_run: Si el run no escribe cambios
        **kwargs: Contadores y datos adicionales
    """
    mode = "dry-run" if dry_run else "apply"
    level = logging.ERROR if operation == "failed" else logging.INFO
    get_logger("app.services.backfills.operation").log(
        level,
        f"🔄 Backfill {job}: {operation} ({mode})",
        extra={"backfill_job": job, "backfill_operation": operation, "dry_run": dry_run, **kwargs},
    )


def log_api_call(method: str, url: str, status_code: int, duration: float, **kwargs):
    """
    Registra una llamada a una API externa.

    2xx va a DEBUG, 4xx a WARNING y el resto a ERROR.
    """
    if 200 <= status_code < 300:
        level = logging.DEBUG
    elif 400 <= status_code < 500:
        level = logging.WARNING
    else:
        level = logging.ERROR

    get_logger("app.api.call").log(
        level,
        f"API call: {method} {url} -> {status_code} ({duration * 1000:.1f}ms)",
        extra={
            "method": method,
            "url": url,
            "status_code": status_code,
            "duration_ms": round(duration * 1000, 2),
            **kwargs,
        },
    )


def log_webhook_received(source: str, event_type: str, **kwargs):
    get_logger("app.webhooks.received").info(
        f"📨 Webhook received: {event_type} from {source}",
        extra={"webhook_source": source, "webhook_event": event_type, **kwargs},
    )


class LogContext:
    """
    Agrega campos a todos los registros emitidos dentro del bloque.

    Ejemplo:
        with LogContext(backfill_job="orders", dry_run=True):
            logger.info("Página procesada")
    """

    def __init__(self, **context):
        self.context = context
        self._token = None

    def __enter__(self):
        self._token = log_context_ctx.set({**log_context_ctx.get(), **self.context})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        log_context_ctx.reset(self._token)
