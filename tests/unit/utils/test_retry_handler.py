"""Tests unitarios para el manejador de reintentos."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.utils.error_handler import AppException, ShippingAPIException, StripeAPIException
from app.utils.retry_handler import (
    SHIPENGINE_RETRY_HANDLER,
    STRIPE_RETRY_HANDLER,
    CircuitBreaker,
    CircuitState,
    RetryHandler,
    RetryPolicy,
    get_all_metrics,
    get_handler,
)


def _handler(max_attempts=3, circuit_breaker=None):
    return RetryHandler(
        "test",
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay=0, jitter=False),
        circuit_breaker=circuit_breaker,
        enable_circuit_breaker=circuit_breaker is not None,
    )


class TestRetryPolicy:
    """Tests para RetryPolicy."""

    def test_upstream_client_errors_are_not_retried(self):
        """Los 4xx de un servicio externo no se reintentan, los 5xx y 429 sí."""
        policy = RetryPolicy(max_attempts=3)

        assert not policy.should_retry(ShippingAPIException("bad request", api_response_code=422), 1)
        assert policy.should_retry(StripeAPIException("unavailable", api_response_code=503), 1)
        assert policy.should_retry(StripeAPIException("slow down", api_response_code=429, rate_limited=True), 1)
        assert not policy.should_retry(StripeAPIException("unavailable", api_response_code=503), 3)

    def test_delay_uses_retry_after(self):
        policy = RetryPolicy(base_delay=1, max_delay=10, jitter=False)

        assert policy.calculate_delay(1, StripeAPIException("slow", rate_limited=True, retry_after=4)) == 4
        assert policy.calculate_delay(3) == 4
        assert policy.calculate_delay(10) == 10


class TestRetryHandler:
    """Tests para RetryHandler.execute."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        func = AsyncMock(side_effect=[StripeAPIException("unavailable", api_response_code=503), "ok"])
        handler = _handler()

        assert await handler.execute(func, "cs_1") == "ok"
        assert func.await_count == 2
        assert handler.metrics["total_retries"] == 1

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        error = ShippingAPIException("Invalid postal code", api_response_code=422)
        func = AsyncMock(side_effect=error)

        with pytest.raises(ShippingAPIException):
            await _handler().execute(func)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_sync_functions_run_in_thread(self):
        """Los SDKs síncronos (Stripe, Resend) se ejecutan fuera del event loop."""
        func = MagicMock(return_value={"id": "pi_1"})

        result = await _handler().execute(func, "pi_1", expand=["latest_charge"])

        assert result == {"id": "pi_1"}
        func.assert_called_once_with("pi_1", expand=["latest_charge"])

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_calls(self):
        breaker = CircuitBreaker(failure_threshold=1, timeout=5)
        handler = _handler(max_attempts=1, circuit_breaker=breaker)

        with pytest.raises(StripeAPIException):
            await handler.execute(AsyncMock(side_effect=StripeAPIException("down", api_response_code=500)))

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(AppException, match="Circuit breaker is OPEN"):
            await handler.execute(AsyncMock(return_value="ok"))


class TestServiceHandlers:
    """Tests para los handlers por servicio."""

    def test_handlers_are_looked_up_by_service(self):
        assert get_handler("Stripe") is STRIPE_RETRY_HANDLER
        assert get_handler("shipengine") is SHIPENGINE_RETRY_HANDLER
        assert get_handler("inventory").name == "inventory"

    def test_all_metrics_include_every_service(self):
        metrics = get_all_metrics()

        assert set(metrics) == {"stripe", "shipengine", "resend", "log_drain"}
        assert "circuit_breaker" in metrics["stripe"]
        assert "circuit_breaker" not in metrics["log_drain"]
