"""Tests unitarios para el cliente de Sanity y sus builders de mutaciones."""

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.db.sanity_client import (
    DEFAULT_RETRY_AFTER,
    MAX_RETRY_AFTER,
    Patch,
    SanityClient,
    Transaction,
    parse_retry_after,
)
from app.utils.error_handler import CMSAPIException


def _client():
    client = SanityClient(project_id="proj", dataset="production", token="token")
    client._request = AsyncMock(return_value={"transactionId": "tx1", "results": [{"id": "order-1"}]})
    return client


class TestPatch:
    """Tests para el builder Patch."""

    def test_operations_are_merged(self):
        """Debe acumular set, unset e inc en una sola mutación."""
        patch = Patch("order-1").set({"status": "paid"}).set({"paid": True}).unset(["a", "b", "a"]).inc({"n": 1})

        assert patch.to_mutations() == [
            {"patch": {"id": "order-1", "set": {"status": "paid", "paid": True}, "unset": ["a", "b"], "inc": {"n": 1}}}
        ]

    def test_empty_values_are_ignored(self):
        patch = Patch("order-1").set({}).unset([]).set_if_missing(None)

        assert patch.is_empty()
        assert patch.to_mutations() == []

    def test_each_extra_insert_is_its_own_mutation(self):
        """Cada insert adicional va en una mutación separada del mismo documento."""
        patch = Patch("order-1").set_if_missing({"events": []}).append("events", [{"a": 1}]).append("notes", ["x"])

        mutations = patch.to_mutations()

        assert mutations[0] == {
            "patch": {
                "id": "order-1",
                "setIfMissing": {"events": []},
                "insert": {"after": "events[-1]", "items": [{"a": 1}]},
            }
        }
        assert mutations[1] == {"patch": {"id": "order-1", "insert": {"after": "notes[-1]", "items": ["x"]}}}

    def test_invalid_insert_position(self):
        with pytest.raises(ValueError):
            Patch("order-1").insert("inside", "events[0]", [1])

    @pytest.mark.asyncio
    async def test_commit_requires_client(self):
        with pytest.raises(CMSAPIException):
            await Patch("order-1").set({"a": 1}).commit()

    @pytest.mark.asyncio
    async def test_empty_commit_does_not_call_api(self):
        client = _client()

        result = await client.patch("order-1").commit()

        assert result == {"transactionId": None, "results": []}
        client._request.assert_not_called()


class TestTransaction:
    """Tests para el builder Transaction."""

    @pytest.mark.asyncio
    async def test_commit_sends_all_mutations_in_one_request(self):
        """Debe enviar todas las mutaciones en un solo request."""
        client = _client()
        transaction = (
            client.transaction()
            .create_if_not_exists({"_id": "customer-1", "_type": "customer"})
            .patch(Patch("order-1").set({"customerRef": {"_type": "reference", "_ref": "customer-1"}}))
            .delete("draft-1")
        )

        assert len(transaction) == 3
        await transaction.commit()

        client._request.assert_awaited_once()
        kwargs = client._request.call_args.kwargs
        assert len(kwargs["json_body"]["mutations"]) == 3
        assert kwargs["params"]["autoGenerateArrayKeys"] == "true"
        assert kwargs["max_retries"] == 1

    @pytest.mark.asyncio
    async def test_unbound_transaction(self):
        with pytest.raises(CMSAPIException):
            await Transaction().create({"_id": "a"}).commit()


class TestSanityClient:
    """Tests para SanityClient."""

    @pytest.mark.asyncio
    async def test_fetch_sends_query_and_params(self):
        client = _client()
        client._request.return_value = {"result": [{"_id": "order-1"}]}

        result = await client.fetch("*[_type == $type]", {"type": "order"})

        assert result == [{"_id": "order-1"}]
        client._request.assert_awaited_once_with(
            "POST", "/data/query/production", json_body={"query": "*[_type == $type]", "params": {"type": "order"}}
        )

    @pytest.mark.asyncio
    async def test_get_document_missing(self):
        client = _client()
        client._request.return_value = {"documents": []}

        assert await client.get_document("nope") is None

    @pytest.mark.asyncio
    async def test_mutate_dry_run_flag(self):
        client = _client()

        await client.mutate([{"delete": {"id": "a"}}], dry_run=True)

        assert client._request.call_args.kwargs["params"]["dryRun"] == "true"

    def test_created_id_and_configuration(self):
        assert SanityClient.created_id({"results": [{"id": "x"}]}) == "x"
        assert SanityClient.created_id({}) is None
        assert _client().is_configured
        assert _client().base_url.startswith("https://proj.api.sanity.io/v")


def _http_client(*responses):
    """Cliente con una sesión falsa que devuelve las respuestas en orden."""
    client = SanityClient(project_id="proj", dataset="production", token="token")
    session = MagicMock()
    contexts = []
    for status, body, headers in responses:
        response = MagicMock(status=status, headers=headers or {})
        response.text = AsyncMock(return_value=body)
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=response)
        context.__aexit__ = AsyncMock(return_value=False)
        contexts.append(context)
    session.request = MagicMock(side_effect=contexts)
    client.session = session
    return client


class TestSanityResponses:
    """Tests para el manejo de respuestas HTTP de Sanity."""

    def test_retry_after_formats(self):
        future = format_datetime(datetime.now(timezone.utc) + timedelta(hours=1))
        past = format_datetime(datetime.now(timezone.utc) - timedelta(minutes=5))

        assert parse_retry_after("7") == 7
        assert parse_retry_after(None) == DEFAULT_RETRY_AFTER
        assert parse_retry_after("soon") == DEFAULT_RETRY_AFTER
        assert parse_retry_after(past) == 0
        assert parse_retry_after(future) == MAX_RETRY_AFTER

    @pytest.mark.asyncio
    async def test_rate_limit_with_http_date_is_retried(self):
        """Un Retry-After con fecha HTTP no rompe el reintento."""
        retry_at = format_datetime(datetime.now(timezone.utc) + timedelta(seconds=3))
        client = _http_client(
            (429, "", {"Retry-After": retry_at}),
            (200, '{"result": []}', None),
        )

        with patch("app.db.sanity_client.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await client._request("POST", "/data/query/production")

        assert result == {"result": []}
        waited = sleep.await_args_list[-1].args[0]
        assert isinstance(waited, int)
        assert 0 <= waited <= 3

    @pytest.mark.asyncio
    async def test_html_error_page_becomes_cms_exception(self):
        """Una página HTML de un proxy (502) se reporta como CMSAPIException reintentable."""
        client = _http_client((502, "<html><body>Bad gateway</body></html>", {"Content-Type": "text/html"}))

        with patch("app.db.sanity_client.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(CMSAPIException) as exc_info:
                await client._request("GET", "/data/doc/production/order-1", max_retries=1)

        assert exc_info.value.api_response_code == 502
        assert exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_rejected(self):
        client = _http_client((200, "OK", {"Content-Type": "text/plain"}))

        with patch("app.db.sanity_client.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(CMSAPIException) as exc_info:
                await client._request("GET", "/data/doc/production/order-1", max_retries=1)

        assert "invalid JSON" in exc_info.value.message
