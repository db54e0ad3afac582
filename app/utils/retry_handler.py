"""
Reintentos con backoff exponencial y circuit breaker.

Cada servicio externo tiene su handler con nombre (stripe, shipengine,
resend, log_drain). El cliente de Sanity maneja sus propios reintentos porque
necesita distinguir mutaciones (no se reintentan) de queries.
"""

import asyncio
import logging
import random
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

from app.core.config import get_settings
from app.utils.error_handler import (
    AppException,
    EmailDeliveryException,
    ExternalAPIException,
    RateLimitException,
    ShippingAPIException,
    StripeAPIException,
)

settings = get_settings()
logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class RetryPolicy:
    """
    Política de reintentos.

    Las AppException deciden por su flag is_retryable; el resto de las
    excepciones se reintentan solo si son instancias de retry_on.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retry_on: Tuple[Type[Exception], ...] = (),
        stop_on: Tuple[Type[Exception], ...] = (),
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retry_on = tuple(retry_on)
        self.stop_on = tuple(stop_on)

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts or isinstance(exception, self.stop_on):
            return False
        if isinstance(exception, AppException):
            return exception.is_retryable
        return isinstance(exception, self.retry_on)

    def calculate_delay(self, attempt: int, exception: Optional[Exception] = None) -> float:
        """
        Segundos de espera antes del intento attempt + 1.

        Un retry_after del servicio (429) tiene prioridad sobre el backoff.
        """
        retry_after = getattr(exception, "retry_after", None)
        if isinstance(exception, (RateLimitException, ExternalAPIException)) and retry_after:
            return min(retry_after, self.max_delay)

        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        if self.jitter:
            delay += random.uniform(-delay * 0.1, delay * 0.1)
        return max(min(delay, self.max_delay), 0)


class CircuitBreaker:
    """
    Corta las llamadas a un servicio después de fallas consecutivas.

    CLOSED -> OPEN al llegar a failure_threshold; OPEN -> HALF_OPEN pasado
    reset_timeout; HALF_OPEN -> CLOSED con success_threshold éxitos, o de
    vuelta a OPEN con una falla.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        success_threshold: int = 3,
        timeout: float = 60.0,
        reset_timeout: float = 300.0,
    ):
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        # Timeout de cada llamada individual
        self.timeout = timeout
        self.reset_timeout = reset_timeout

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.last_success_time: Optional[datetime] = None

    def can_execute(self) -> bool:
        if self.state != CircuitState.OPEN:
            return True
        elapsed = datetime.now(timezone.utc) - (self.last_failure_time or datetime.now(timezone.utc))
        if elapsed >= timedelta(seconds=self.reset_timeout):
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
            logger.info("🔄 Circuit breaker moving to HALF_OPEN state")
            return True
        return False

    def record_success(self):
        self.last_success_time = datetime.now(timezone.utc)
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = CircuitState.CLOSED
                logger.info("✅ Circuit breaker CLOSED - service recovered")

    def record_failure(self):
        self.last_failure_time = datetime.now(timezone.utc)
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or (
            self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold
        ):
            self.state = CircuitState.OPEN
            logger.warning(f"⚠️ Circuit breaker OPEN - {self.failure_count} consecutive failures")

    def get_state_info(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "last_success": self.last_success_time.isoformat() if self.last_success_time else None,
        }


class RetryHandler:
    """
    Ejecuta llamadas con reintentos, circuit breaker y métricas.
    """

    def __init__(
        self,
        name: str,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        enable_circuit_breaker: bool = True,
    ):
        self.name = name
        self.retry_policy = retry_policy or RetryPolicy()
        self.circuit_breaker = (circuit_breaker or CircuitBreaker()) if enable_circuit_breaker else None
        self.reset_metrics()

    async def execute(self, func: Callable, *args, context: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        """
        Ejecuta func(*args, **kwargs) con reintentos.

        Las funciones síncronas (SDKs de Stripe y Resend) corren en un thread
        para no bloquear el event loop.

        Args:
            func: Función o corrutina a ejecutar
            context: Datos para los logs de reintento

        Returns:
            Any: Resultado de la función

        Raises:
            AppException: Si el circuit breaker está abierto o la llamada excede el timeout
            Exception: La última excepción cuando no quedan reintentos
        """
        context = context or {}
        breaker = self.circuit_breaker
        if breaker and not breaker.can_execute():
            raise AppException(
                message=f"Circuit breaker is OPEN for {self.name}",
                details={"circuit_state": breaker.state.value, "context": context},
            )

        started = time.time()
        max_attempts = self.retry_policy.max_attempts
        last_exception: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            self.metrics["total_attempts"] += 1
            try:
                call = self._call(func, *args, **kwargs)
                result = await asyncio.wait_for(call, timeout=breaker.timeout) if breaker else await call
            except asyncio.TimeoutError:
                last_exception = AppException(
                    message=f"Operation {self.name} timed out",
                    details={"timeout": breaker.timeout if breaker else None, "context": context},
                    is_retryable=True,
                )
            except Exception as e:
                last_exception = e
            else:
                self._record_success(time.time() - started)
                if breaker:
                    breaker.record_success()
                return result

            self.metrics["total_failures"] += 1
            if breaker:
                breaker.record_failure()

            if not self.retry_policy.should_retry(last_exception, attempt):
                break
            delay = self.retry_policy.calculate_delay(attempt, last_exception)
            self.metrics["total_retries"] += 1
            logger.info(
                f"🔄 Retrying {self.name} in {delay:.2f}s - Attempt {attempt + 1}/{max_attempts}: {last_exception}",
                extra={"context": context},
            )
            await asyncio.sleep(delay)

        logger.warning(f"⚠️ {self.name} failed: {type(last_exception).__name__}: {last_exception}", extra={"context": context})
        raise last_exception

    async def _call(self, func: Callable, *args, **kwargs) -> Any:
        if asyncio.iscoroutinefunction(func):
            return await func(*args, **kwargs)
        return await asyncio.to_thread(func, *args, **kwargs)

    def _record_success(self, duration: float):
        self.metrics["total_successes"] += 1
        successes = self.metrics["total_successes"]
        self.metrics["avg_duration"] += (duration - self.metrics["avg_duration"]) / successes

    def get_metrics(self) -> Dict[str, Any]:
        attempts = self.metrics["total_attempts"]
        metrics = {
            **self.metrics,
            "handler_name": self.name,
            "success_rate": round(self.metrics["total_successes"] / attempts * 100, 2) if attempts else 0,
        }
        if self.circuit_breaker:
            metrics["circuit_breaker"] = self.circuit_breaker.get_state_info()
        return metrics

    def reset_metrics(self):
        self.metrics = {
            "total_attempts": 0,
            "total_successes": 0,
            "total_failures": 0,
            "total_retries": 0,
            "avg_duration": 0.0,
        }


# === HANDLERS POR SERVICIO ===


def create_stripe_retry_handler() -> RetryHandler:
    return RetryHandler(
        name="stripe_api",
        retry_policy=RetryPolicy(
            max_attempts=settings.MAX_RETRIES,
            base_delay=float(settings.RETRY_DELAY_SECONDS),
            max_delay=30.0,
            exponential_base=settings.RETRY_BACKOFF_FACTOR,
            retry_on=(StripeAPIException,),
        ),
        circuit_breaker=CircuitBreaker(failure_threshold=5, success_threshold=2, timeout=45.0, reset_timeout=120.0),
    )


def create_shipengine_retry_handler() -> RetryHandler:
    """Solo errores de red: las respuestas 4xx se devuelven al llamador sin reintentar."""
    return RetryHandler(
        name="shipengine_api",
        retry_policy=RetryPolicy(max_attempts=2, base_delay=1.0, max_delay=10.0, retry_on=(ShippingAPIException,)),
        circuit_breaker=CircuitBreaker(failure_threshold=5, success_threshold=1, timeout=30.0, reset_timeout=60.0),
    )


def create_resend_retry_handler() -> RetryHandler:
    return RetryHandler(
        name="resend_api",
        retry_policy=RetryPolicy(max_attempts=2, base_delay=2.0, max_delay=20.0, retry_on=(EmailDeliveryException,)),
        enable_circuit_breaker=False,
    )


def create_log_drain_retry_handler() -> RetryHandler:
    """Un solo reintento corto: el fan-out no debe retrasar el request que lo origina."""
    return RetryHandler(
        name="log_drain",
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0.5, max_delay=2.0, jitter=False),
        enable_circuit_breaker=False,
    )


STRIPE_RETRY_HANDLER = create_stripe_retry_handler()
SHIPENGINE_RETRY_HANDLER = create_shipengine_retry_handler()
RESEND_RETRY_HANDLER = create_resend_retry_handler()
LOG_DRAIN_RETRY_HANDLER = create_log_drain_retry_handler()

RETRY_HANDLERS: Dict[str, RetryHandler] = {
    "stripe": STRIPE_RETRY_HANDLER,
    "shipengine": SHIPENGINE_RETRY_HANDLER,
    "resend": RESEND_RETRY_HANDLER,
    "log_drain": LOG_DRAIN_RETRY_HANDLER,
}


def get_handler(service: str) -> RetryHandler:
    """
    Handler del servicio; para nombres desconocidos, uno nuevo con la política por defecto.
    """
    return RETRY_HANDLERS.get(service.lower()) or RetryHandler(name=service)


def get_all_metrics() -> Dict[str, Dict[str, Any]]:
    return {name: handler.get_metrics() for name, handler in RETRY_HANDLERS.items()}
