"""
Sistema de health checks para monitoreo de servicios.

Este módulo proporciona funciones para verificar el estado del CMS, de Stripe,
de Redis y de los recursos del host.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Tuple

import psutil

from app.core.config import get_settings
from app.core.redis_client import test_redis_connection
from app.db.sanity_client import test_sanity_connection
from app.db.stripe_client import get_stripe_gateway
from app.utils.retry_handler import get_all_metrics

settings = get_settings()
logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[bool]]

# Variable global para tracking de uptime
_app_start_time = datetime.now(timezone.utc)

# Cache global para health checks
_health_cache: Dict[str, Any] = {}
_cache_timestamp: Dict[str, datetime] = {}


async def _run_checks(checks: List[Tuple[str, HealthCheck, float]], total_timeout: float) -> Tuple[bool, Dict[str, Any]]:
    """Ejecuta checks en paralelo; un check que falla no cancela a los demás."""
    tasks = [
        asyncio.create_task(run_health_check_with_timeout(name, check, timeout), name=f"health_check_{name}")
        for name, check, timeout in checks
    ]

    results: Dict[str, Any] = {}
    overall_healthy = True
    try:
        outcomes = await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=total_timeout)
    except asyncio.TimeoutError:
        logger.error("Health check timeout exceeded")
        for name, _, _ in checks:
            results[name] = {"status": "timeout", "error": "Health check timeout", "latency_ms": None}
        return False, results

    for (name, _, _), outcome in zip(checks, outcomes):
        if isinstance(outcome, BaseException):
            results[name] = {"status": "unhealthy", "error": str(outcome), "latency_ms": None}
            overall_healthy = False
        else:
            results[name] = outcome
            if outcome.get("status") != "healthy":
                overall_healthy = False
    return overall_healthy, results


async def get_health_status_fast() -> Dict[str, Any]:
    """
    Obtiene el estado de salud rápido usando cache.

    Solo revisa memoria y disco; los servicios externos quedan para
    get_health_status().

    Returns:
        Dict: Estado de salud básico (desde cache si está disponible)
    """
    cache_key = "health_status"
    now = datetime.now(timezone.utc)

    if (
        cache_key in _health_cache
        and cache_key in _cache_timestamp
        and (now - _cache_timestamp[cache_key]).total_seconds() < settings.HEALTH_CHECK_CACHE_TTL
    ):
        logger.debug("Returning cached health status")
        return _health_cache[cache_key]

    overall_healthy, services = await _run_checks(
        [("memory", check_memory_usage, 1.0), ("disk_space", check_disk_space, 1.0)], total_timeout=2.0
    )
    health_response = {
        "overall": overall_healthy,
        "services": services,
        "uptime": get_uptime_info(),
        "timestamp": now.isoformat(),
        "cache_info": "fast_check",
    }

    _health_cache[cache_key] = health_response
    _cache_timestamp[cache_key] = now
    return health_response


async def get_health_status() -> Dict[str, Any]:
    """
    Obtiene el estado de salud completo de todos los servicios.

    Returns:
        Dict: Estado de salud completo del sistema
    """
    external_timeout = settings.HEALTH_CHECK_TIMEOUT
    overall_healthy, services = await _run_checks(
        [
            ("sanity", check_sanity_health, external_timeout),
            ("stripe", check_stripe_health, external_timeout),
            ("redis", check_redis_health, 2.0),
            ("disk_space", check_disk_space, 1.0),
            ("memory", check_memory_usage, 1.0),
            ("cpu", check_cpu_usage, 2.0),
        ],
        total_timeout=external_timeout + 1,
    )

    return {
        "overall": overall_healthy,
        "services": services,
        "uptime": get_uptime_info(),
        "system": get_system_info(),
        "retry_handlers": get_all_metrics(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def run_health_check_with_timeout(service_name: str, check_func: HealthCheck, timeout: float) -> Dict[str, Any]:
    """
    Ejecuta un check con su propio timeout.

    Returns:
        Dict: status (healthy, unhealthy o timeout), latencia y error si lo hubo
    """
    started = time.time()
    outcome: Dict[str, Any]
    try:
        healthy = await asyncio.wait_for(check_func(), timeout=timeout)
        outcome = {"status": "healthy" if healthy else "unhealthy"}
    except asyncio.TimeoutError:
        logger.warning(f"⚠️ Health check timeout for {service_name} after {timeout}s")
        outcome = {"status": "timeout", "error": f"Health check timeout after {timeout}s"}
    except Exception as e:
        logger.error(f"❌ Health check failed for {service_name}: {e}")
        outcome = {"status": "unhealthy", "error": str(e)}

    outcome["latency_ms"] = round((time.time() - started) * 1000, 2)
    outcome["timestamp"] = datetime.now(timezone.utc).isoformat()
    return outcome


async def check_sanity_health() -> bool:
    """
    Verifica la conectividad con la API de Sanity.

    Returns:
        bool: True si Sanity responde
    """
    if not settings.sanity_configured:
        return False
    return await test_sanity_connection()


async def check_stripe_health() -> bool:
    """
    Verifica que la API de Stripe acepte la clave configurada.

    Returns:
        bool: True si Stripe responde
    """
    if not settings.stripe_configured:
        return False
    await get_stripe_gateway().list_events(limit=1)
    return True


async def check_redis_health() -> bool:
    """
    Verifica la conectividad con Redis.

    Returns:
        bool: True si Redis está disponible
    """
    if not settings.REDIS_URL:
        return True  # Redis es opcional
    return await test_redis_connection()


async def check_disk_space() -> bool:
    """
    Verifica el espacio en disco disponible.

    Returns:
        bool: True si hay suficiente espacio
    """
    disk_usage = psutil.disk_usage("/")
    free_percent = (disk_usage.free / disk_usage.total) * 100
    return free_percent > (settings.DISK_SPACE_THRESHOLD or 10)


async def check_memory_usage() -> bool:
    """
    Verifica el uso de memoria del sistema.

    Returns:
        bool: True si el uso de memoria está dentro de límites
    """
    return psutil.virtual_memory().percent < (settings.MEMORY_USAGE_THRESHOLD or 90)


async def check_cpu_usage() -> bool:
    # cpu_percent con intervalo bloquea; se mide en un thread
    cpu_percent = await asyncio.to_thread(psutil.cpu_percent, 0.5)
    return cpu_percent < 95


def get_uptime_info() -> Dict[str, Any]:
    """
    Obtiene información de uptime de la aplicación.

    Returns:
        Dict: Información de uptime
    """
    current_time = datetime.now(timezone.utc)
    uptime_delta = current_time - _app_start_time

    return {
        "start_time": _app_start_time.isoformat(),
        "current_time": current_time.isoformat(),
        "uptime_seconds": int(uptime_delta.total_seconds()),
        "uptime_human": format_uptime(uptime_delta),
    }


def get_system_info() -> Dict[str, Any]:
    """
    Obtiene información del sistema.

    Returns:
        Dict: Información del sistema
    """
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage("/")
    return {
        "cpu_count": psutil.cpu_count(),
        "memory_total_gb": round(memory.total / (1024**3), 2),
        "memory_usage_percent": memory.percent,
        "memory_available_gb": round(memory.available / (1024**3), 2),
        "disk_total_gb": round(disk.total / (1024**3), 2),
        "disk_free_gb": round(disk.free / (1024**3), 2),
        "disk_usage_percent": round(((disk.total - disk.free) / disk.total) * 100, 2),
    }


def format_uptime(uptime_delta: timedelta) -> str:
    """Uptime legible, por ejemplo "1d 2h 3m 4s"; omite las unidades en cero."""
    hours, remainder = divmod(uptime_delta.seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    units = ((uptime_delta.days, "d"), (hours, "h"), (minutes, "m"))
    parts = [f"{value}{suffix}" for value, suffix in units if value]
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return " ".join(parts)
