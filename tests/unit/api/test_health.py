"""Tests unitarios para los health checks."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.core.health import _run_checks, format_uptime, run_health_check_with_timeout


def test_format_uptime():
    assert format_uptime(timedelta(days=1, hours=2, seconds=4)) == "1d 2h 4s"
    assert format_uptime(timedelta(minutes=3)) == "3m"
    assert format_uptime(timedelta(0)) == "0s"


@pytest.mark.asyncio
async def test_check_result_statuses():
    healthy = await run_health_check_with_timeout("sanity", AsyncMock(return_value=True), timeout=1)
    unhealthy = await run_health_check_with_timeout("stripe", AsyncMock(return_value=False), timeout=1)
    failed = await run_health_check_with_timeout("redis", AsyncMock(side_effect=ConnectionError("refused")), timeout=1)

    assert healthy["status"] == "healthy"
    assert unhealthy["status"] == "unhealthy"
    assert failed == {**failed, "status": "unhealthy", "error": "refused"}
    assert "latency_ms" in healthy


@pytest.mark.asyncio
async def test_slow_check_times_out():
    async def slow():
        await asyncio.sleep(1)
        return True

    result = await run_health_check_with_timeout("sanity", slow, timeout=0.01)

    assert result["status"] == "timeout"


@pytest.mark.asyncio
async def test_one_failing_check_does_not_hide_the_others():
    overall, services = await _run_checks(
        [("memory", AsyncMock(return_value=True), 1.0), ("disk_space", AsyncMock(return_value=False), 1.0)],
        total_timeout=2.0,
    )

    assert overall is False
    assert services["memory"]["status"] == "healthy"
    assert services["disk_space"]["status"] == "unhealthy"
