"""Tests unitarios para la sincronización de órdenes desde Stripe."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.db.sanity_client import SanityClient
from app.services.stripe_orders import (
    build_event_record,
    create_order_slug,
    derive_order_status,
    normalize_metadata,
    normalize_payment_status,
    reprocess_stripe_session,
    resolve_order_number,
    upsert_order_from_session,
)
from app.utils.error_handler import NotFoundException, ValidationException


def _sanity(fetch=None):
    sanity = SanityClient(project_id="proj", dataset="production", token="token")
    sanity.fetch = AsyncMock(side_effect=fetch) if callable(fetch) else AsyncMock(return_value=fetch)
    sanity.mutate = AsyncMock(return_value={"transactionId": "tx", "results": [{"id": "order-new"}]})
    return sanity


def _session(**overrides):
    session = {
        "id": "cs_test_a1b2c3123456",
        "status": "complete",
        "payment_status": "paid",
        "mode": "payment",
        "currency": "usd",
        "amount_total": 26250,
        "amount_subtotal": 25000,
        "total_details": {"amount_tax": 1250},
        "customer_details": {
            "email": "jane@example.com",
            "name": "Jane Doe",
            "address": {"line1": "1 Main St", "city": "Austin", "state": "TX", "postal_code": "78701", "country": "US"},
        },
        "metadata": {"order_number": "FAS-654321"},
    }
    session.update(overrides)
    return session


class TestStatusHelpers:
    """Tests para la normalización de estados."""

    def test_normalize_payment_status(self):
        assert normalize_payment_status("succeeded") == "paid"
        assert normalize_payment_status("unpaid", "expired") == "expired"
        assert normalize_payment_status("canceled") == "cancelled"
        assert normalize_payment_status("requires_payment_method") == "failed"
        assert normalize_payment_status(None) == "pending"
        assert normalize_payment_status("processing") == "processing"

    def test_derive_order_status(self):
        assert derive_order_status("paid") == "paid"
        assert derive_order_status("failed") == "cancelled"
        assert derive_order_status("pending", "expired") == "expired"

    def test_order_slug(self):
        assert create_order_slug("FAS-123456") == "fas-123456"
        assert create_order_slug(None, "cs_test_1") == "cs-test-1"

    def test_normalize_metadata(self):
        assert normalize_metadata({"a": " x ", "b": "", "c": None, "d": 5}) == {"a": "x", "d": "5"}
        assert normalize_metadata("nope") == {}

    def test_event_record(self):
        record = build_event_record(
            "charge.refunded", status="refunded", amount=10.0, currency="usd", occurred_at=1700000000, metadata={"a": 1}
        )

        assert record["_type"] == "orderEvent"
        assert record["currency"] == "USD"
        assert record["createdAt"].startswith("2023-11-14")
        assert json.loads(record["metadata"]) == {"a": 1}
        assert "label" not in record


class TestResolveOrderNumber:
    """Tests para resolve_order_number."""

    @pytest.mark.asyncio
    async def test_metadata_number_wins_when_free(self):
        sanity = _sanity(fetch=0)

        assert await resolve_order_number("fas-111222", None, "cs_test_999999", sanity=sanity) == "FAS-111222"

    @pytest.mark.asyncio
    async def test_falls_back_to_session_digits(self):
        """Si el número de metadata está usado, prueba con los dígitos de la sesión."""

        async def fetch(query, params):
            return 1 if params["num"] == "FAS-111222" else 0

        sanity = _sanity(fetch=fetch)

        assert await resolve_order_number("FAS-111222", None, "cs_test_a1b2c3123456", sanity=sanity) == "FAS-123456"

    @pytest.mark.asyncio
    async def test_random_number_when_all_used(self):
        calls = []

        async def fetch(query, params):
            calls.append(params["num"])
            return 1 if len(calls) <= 2 else 0

        sanity = _sanity(fetch=fetch)

        number = await resolve_order_number("FAS-111222", None, "cs_test_a1b2c3123456", sanity=sanity)

        assert number.startswith("FAS-")
        assert len(number) == 10
        assert number == calls[-1]


class TestUpsertOrderFromSession:
    """Tests para upsert_order_from_session."""

    def _fetch(self, existing=None, customer_id=None):
        async def fetch(query, params=None):
            if "stripeSessionId" in query:
                return existing
            if "customer" in query:
                return customer_id
            return 0

        return fetch

    @pytest.mark.asyncio
    async def test_creates_order(self):
        """Una sesión nueva crea la orden con número, cliente y totales."""
        sanity = _sanity(fetch=self._fetch(customer_id="customer-1"))

        with patch("app.services.stripe_orders.resolve_shipping_details", AsyncMock(return_value={})):
            result = await upsert_order_from_session(_session(), sanity=sanity)

        assert result["created"] is True
        assert result["orderId"] == "order-new"
        assert result["orderNumber"] == "FAS-654321"
        assert result["paymentStatus"] == "paid"
        created = sanity.mutate.call_args.args[0][0]["create"]
        assert created["stripeSessionId"] == "cs_test_a1b2c3123456"
        assert created["totalAmount"] == 262.5
        assert created["amountTax"] == 12.5
        assert created["customerRef"] == {"_type": "reference", "_ref": "customer-1"}
        assert created["slug"] == {"_type": "slug", "current": "fas-654321"}
        assert created["shippingAddress"]["postalCode"] == "78701"
        assert "checkoutDraft" not in created

    @pytest.mark.asyncio
    async def test_reprocessing_updates_existing_order(self):
        """Reprocesar la misma sesión actualiza la orden sin duplicarla."""
        sanity = _sanity(fetch=self._fetch(existing={"_id": "order-1", "orderNumber": "FAS-000001"}))

        with patch("app.services.stripe_orders.resolve_shipping_details", AsyncMock(return_value={})):
            result = await upsert_order_from_session(_session(), sanity=sanity)

        assert result["created"] is False
        assert result["orderId"] == "order-1"
        assert result["orderNumber"] == "FAS-000001"
        mutation = sanity.mutate.call_args.args[0][0]
        assert mutation["patch"]["id"] == "order-1"
        assert mutation["patch"]["setIfMissing"] == {"webhookNotified": True}

    @pytest.mark.asyncio
    async def test_unpaid_session_is_draft(self):
        sanity = _sanity(fetch=self._fetch())

        with patch("app.services.stripe_orders.resolve_shipping_details", AsyncMock(return_value={})):
            result = await upsert_order_from_session(_session(payment_status="unpaid", status="open"), sanity=sanity)

        created = sanity.mutate.call_args.args[0][0]["create"]
        assert result["paymentStatus"] == "failed"
        assert created["status"] == "cancelled"
        assert created["checkoutDraft"] is True

    @pytest.mark.asyncio
    async def test_session_id_required(self):
        with pytest.raises(ValidationException):
            await upsert_order_from_session({"id": " "}, sanity=_sanity())


class TestReprocessStripeSession:
    """Tests para reprocess_stripe_session."""

    @pytest.mark.asyncio
    async def test_unsupported_prefix(self):
        with pytest.raises(ValidationException):
            await reprocess_stripe_session("in_123", sanity=_sanity(), gateway=MagicMock())

    @pytest.mark.asyncio
    async def test_missing_session(self):
        """Un payment intent sin checkout session responde 404."""
        gateway = MagicMock()
        gateway.list_checkout_sessions = AsyncMock(return_value={"data": []})

        with pytest.raises(NotFoundException):
            await reprocess_stripe_session("pi_123", sanity=_sanity(), gateway=gateway)

    @pytest.mark.asyncio
    async def test_reprocess_from_checkout_session(self):
        gateway = MagicMock()
        gateway.retrieve_checkout_session = AsyncMock(return_value=_session(payment_intent="pi_1"))
        gateway.retrieve_payment_intent = AsyncMock(return_value={"id": "pi_1", "status": "succeeded"})
        gateway.list_session_line_items = AsyncMock(return_value=[])
        upsert = AsyncMock(
            return_value={"orderId": "order-1", "invoiceId": None, "paymentStatus": "paid", "orderNumber": "FAS-654321"}
        )

        with patch("app.services.stripe_orders.upsert_order_from_session", upsert):
            result = await reprocess_stripe_session("cs_test_a1b2c3123456", sanity=_sanity(), gateway=gateway)

        assert result == {
            "orderId": "order-1",
            "invoiceId": None,
            "paymentStatus": "paid",
            "orderNumber": "FAS-654321",
            "stripeSessionId": "cs_test_a1b2c3123456",
        }
        gateway.retrieve_payment_intent.assert_awaited_once_with("pi_1", expand=["latest_charge"])
