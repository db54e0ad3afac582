"""Tests unitarios para log drains y su fan-out."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.db.sanity_client import SanityClient
from app.services.log_drains import LogDrainService, headers_from_array, headers_to_array, to_log_drain
from app.utils.error_handler import LogDrainDeliveryException, NotFoundException, ValidationException

DRAINS = [
    {"_id": "drain-1", "name": "Datadog", "url": "https://logs.example.com/a", "enabled": True},
    {"_id": "drain-2", "name": "Broken", "url": "https://logs.example.com/b", "enabled": True},
    {"_id": "drain-3", "name": "Custom", "url": "https://logs.example.com/c", "enabled": True,
     "headers": [{"_key": "k", "key": "Authorization", "value": "Bearer x"}]},
]


def _sanity(fetch_result=None, document=None):
    sanity = SanityClient(project_id="proj", dataset="production", token="token")
    sanity.fetch = AsyncMock(return_value=fetch_result)
    sanity.get_document = AsyncMock(return_value=document)
    sanity.mutate = AsyncMock(return_value={"transactionId": "tx", "results": [{"id": "drain-new"}]})
    return sanity


def _response(status):
    response = MagicMock()
    response.status = status
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


class TestHeaders:
    """Tests para la conversión de headers."""

    def test_round_trip_shape(self):
        entries = headers_to_array({"X-Token": 123})

        assert entries[0]["key"] == "X-Token"
        assert entries[0]["value"] == "123"
        assert entries[0]["_key"]
        assert headers_from_array(entries) == {"X-Token": "123"}

    def test_empty_headers(self):
        assert headers_to_array({}) is None
        assert headers_from_array([{"value": "no key"}]) is None

    def test_to_log_drain(self):
        drain = to_log_drain(DRAINS[2])

        assert drain["id"] == "drain-3"
        assert drain["headers"] == {"Authorization": "Bearer x"}
        assert drain["enabled"] is True


class TestCrud:
    """Tests para el CRUD de log drains."""

    @pytest.mark.asyncio
    async def test_create_requires_name_and_url(self):
        service = LogDrainService(sanity=_sanity(), timeout=1)

        with pytest.raises(ValidationException) as exc_info:
            await service.create_drain({"name": "No url"})

        assert exc_info.value.status_code == 400
        assert exc_info.value.field == "url"

    @pytest.mark.asyncio
    async def test_create_defaults(self):
        """El provider por defecto es custom y el drain queda habilitado."""
        sanity = _sanity()
        service = LogDrainService(sanity=sanity, timeout=1)

        drain = await service.create_drain({"name": "Datadog", "url": "https://logs.example.com"})

        assert drain["id"] == "drain-new"
        assert drain["provider"] == "custom"
        assert drain["enabled"] is True
        assert sanity.mutate.call_args.args[0][0]["create"]["_type"] == "logDrain"

    @pytest.mark.asyncio
    async def test_update_unknown_drain(self):
        service = LogDrainService(sanity=_sanity(document=None), timeout=1)

        with pytest.raises(NotFoundException):
            await service.update_drain("missing", {"name": "x"})

    @pytest.mark.asyncio
    async def test_update_only_sent_fields(self):
        sanity = _sanity(document={"_id": "drain-1", "_type": "logDrain", "name": "Old", "url": "https://a", "enabled": True})
        service = LogDrainService(sanity=sanity, timeout=1)

        drain = await service.update_drain("drain-1", {"name": "New", "enabled": False, "url": "  "})

        assert drain["name"] == "New"
        assert drain["enabled"] is False
        assert drain["url"] == "https://a"
        assert sanity.mutate.call_args.args[0][0]["patch"]["set"] == {"name": "New", "enabled": False}

    @pytest.mark.asyncio
    async def test_delete(self):
        sanity = _sanity(document={"_id": "drain-1", "_type": "logDrain"})
        service = LogDrainService(sanity=sanity, timeout=1)

        await service.delete_drain("drain-1")

        assert sanity.mutate.call_args.args[0] == [{"delete": {"id": "drain-1"}}]


class TestDelivery:
    """Tests para la entrega de eventos."""

    @pytest.mark.asyncio
    async def test_post_sends_custom_headers(self):
        service = LogDrainService(sanity=_sanity(), timeout=1)
        session = MagicMock()
        session.post.return_value = _response(202)

        status = await service._post(session, DRAINS[2], {"message": "hi"})

        assert status == 202
        headers = session.post.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer x"
        assert headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_post_non_2xx_raises(self):
        service = LogDrainService(sanity=_sanity(), timeout=1)
        session = MagicMock()
        session.post.return_value = _response(500)

        with pytest.raises(LogDrainDeliveryException) as exc_info:
            await service._post(session, DRAINS[0], {"message": "hi"})

        assert exc_info.value.api_response_code == 500

    @pytest.mark.asyncio
    async def test_fan_out_is_all_settled(self):
        """Un drain que falla no impide la entrega a los demás."""
        service = LogDrainService(sanity=_sanity(fetch_result=DRAINS), timeout=1)

        async def deliver(session, drain, event):
            if drain["_id"] == "drain-2":
                raise LogDrainDeliveryException("Log drain responded 503", api_response_code=503)
            return 200

        with patch.object(service, "_deliver", side_effect=deliver):
            results = await service.fan_out({"level": "error", "message": "boom"})

        assert [entry["ok"] for entry in results] == [True, False, True]
        assert results[1] == {
            "drainId": "drain-2",
            "name": "Broken",
            "ok": False,
            "status": 503,
            "error": "Log drain responded 503",
        }

    @pytest.mark.asyncio
    async def test_fan_out_without_drains(self):
        service = LogDrainService(sanity=_sanity(fetch_result=[]), timeout=1)

        assert await service.fan_out({"message": "x"}) == []

    @pytest.mark.asyncio
    async def test_fan_out_adds_timestamp(self):
        service = LogDrainService(sanity=_sanity(fetch_result=DRAINS[:1]), timeout=1)
        deliver = AsyncMock(return_value=200)

        with patch.object(service, "_deliver", deliver):
            await service.fan_out({"message": "x"})

        event = deliver.call_args.args[2]
        assert event["message"] == "x"
        assert "timestamp" in event

    @pytest.mark.asyncio
    async def test_test_drain_records_result(self):
        """El test guarda lastTestResult según el resultado."""
        sanity = _sanity(document={"_id": "drain-1", "_type": "logDrain", "url": "https://a"})
        service = LogDrainService(sanity=sanity, timeout=1)

        with patch.object(service, "_post", AsyncMock(side_effect=LogDrainDeliveryException("down", api_response_code=502))):
            result = await service.test_drain("drain-1")

        assert result == {"ok": False, "status": 502, "error": "down"}
        assert sanity.mutate.call_args.args[0][0]["patch"]["set"]["lastTestResult"] == "failed"

    @pytest.mark.asyncio
    async def test_record_function_log(self):
        sanity = _sanity(fetch_result=[])
        service = LogDrainService(sanity=sanity, timeout=1)

        result = await service.record_function_log("api", "error", "boom", {"path": "/x"})

        created = sanity.mutate.call_args.args[0][0]["create"]
        assert created["_type"] == "functionLog"
        assert created["functionName"] == "api"
        assert result == {"logId": "drain-new", "deliveries": []}
