"""Tests unitarios para las transformaciones de los backfills."""

from unittest.mock import AsyncMock, patch

import pytest

from app.db.sanity_client import SanityClient
from app.services.backfills.customers import transform_customer
from app.services.backfills.invoices import (
    convert_legacy_line_item,
    generate_unique_invoice_number,
    invoice_number_candidates,
    migrate_legacy_reference,
    needs_line_item_fix,
)
from app.services.backfills.base import BackfillChange
from app.services.backfills.orders import (
    DEFAULT_PACKAGE_DIMENSIONS,
    CleanCartItemsBackfill,
    OrderDetailsBackfill,
    calculate_package_dimensions,
    calculate_package_weight,
    complete_address,
    extract_card_details,
    transform_order_details,
    transform_order_references,
)
from app.services.backfills.references import (
    invoice_number_from_order,
    order_customer_email,
    parse_step_cursor,
    step_cursor,
)
from app.services.backfills.stripe_jobs import (
    OrderStripeBackfill,
    checkout_expiration_diagnostics,
    determine_async_outcome,
    refund_event_type,
    select_stripe_id,
    should_process_refund,
)
from app.utils.error_handler import ValidationException

SUMMARY = {
    "paymentMethod": {"brand": "visa", "last4": "4242"},
    "shippingAddress": {
        "name": "Jane Doe",
        "line1": "1 Main St",
        "city": "Austin",
        "state": "TX",
        "postalCode": "78701",
        "country": "US",
    },
}


def _apply(document, change: BackfillChange):
    """Aplica un cambio sobre una copia del documento."""
    updated = dict(document)
    updated.update(change.set)
    for path in change.unset:
        updated.pop(path, None)
    return updated


class TestCustomerTransform:
    """Tests para transform_customer."""

    def test_legacy_identity_and_opt_in_defaults(self):
        change = transform_customer({"_id": "c1", "auth0Id": "auth0|1", "emailOptIn": True}, timestamp="2024-01-01T00:00:00Z")

        assert change.set == {
            "userId": "auth0|1",
            "marketingOptIn": False,
            "textOptIn": False,
            "updatedAt": "2024-01-01T00:00:00Z",
        }

    def test_complete_customer_is_noop(self):
        """Un customer completo no genera cambios."""
        document = {
            "_id": "c1",
            "userId": "auth0|1",
            "emailOptIn": True,
            "marketingOptIn": False,
            "textOptIn": False,
            "updatedAt": "2024-01-01T00:00:00Z",
        }

        assert transform_customer(document).is_empty()


class TestOrderReferences:
    """Tests para transform_order_references."""

    def test_customer_reference_is_migrated(self):
        change = transform_order_references({"_id": "o1", "customer": {"_ref": "customer-1"}})

        assert change.set["customerRef"] == {"_type": "reference", "_ref": "customer-1"}
        assert change.unset == ["customer"]
        assert change.counters == ["migratedCustomer"]

    def test_legacy_customer_removed_when_ref_exists(self):
        change = transform_order_references(
            {"_id": "o1", "customerRef": {"_ref": "customer-2"}, "customer": {"_ref": "customer-1"}}
        )

        assert change.set == {}
        assert change.unset == ["customer"]

    def test_transform_is_idempotent(self):
        """Aplicar la transformación sobre su propio resultado no cambia nada."""
        document = {
            "_id": "o1",
            "customer": {"_ref": "customer-1"},
            "cart": [{"_type": "cartLine", "_key": "a", "description": "Kit"}],
        }

        updated = _apply(document, transform_order_references(document))

        assert transform_order_references(updated).without_noops(updated).is_empty()


class TestOrderDetails:
    """Tests para los detalles de órdenes."""

    def test_card_details_from_summary(self):
        assert extract_card_details({"stripeSummary": SUMMARY}) == {"brand": "visa", "last4": "4242"}
        metadata_summary = {
            "metadata": [
                {"key": "payment_method_brand", "value": "amex"},
                {"key": "payment_method_last4", "value": "0005"},
            ]
        }
        assert extract_card_details({"stripeSummary": metadata_summary}) == {"brand": "amex", "last4": "0005"}

    def test_complete_address_from_summary(self):
        address = complete_address({"stripeSummary": SUMMARY, "customerEmail": "jane@x.co"}, "shippingAddress")

        assert address["addressLine1"] == "1 Main St"
        assert address["email"] == "jane@x.co"
        assert complete_address({"shippingAddress": address}, "shippingAddress") is None

    def test_package_weight(self):
        cart = [{"weight": 2, "quantity": 2}, {"weight": 0.5}]

        assert calculate_package_weight(cart) == 5.5
        assert calculate_package_weight(cart, existing_weight=3) is None
        assert calculate_package_weight([{"name": "no weight"}]) is None

    def test_package_dimensions(self):
        """Largo y ancho máximos, altos apilados, más 2 pulgadas."""
        cart = [
            {"dimensions": {"length": 10, "width": 4, "height": 2}, "quantity": 2},
            {"dimensions": {"length": 6, "width": 8, "height": 3}},
        ]

        assert calculate_package_dimensions(cart) == {"length": 12, "width": 10, "height": 9}
        assert calculate_package_dimensions([]) == DEFAULT_PACKAGE_DIMENSIONS
        assert calculate_package_dimensions(cart, existing={"length": 1, "width": 1, "height": 1}) is None
        assert calculate_package_dimensions(cart, existing=DEFAULT_PACKAGE_DIMENSIONS) is not None

    def test_order_details_idempotent(self):
        document = {
            "_id": "o1",
            "cardBrand": "unknown",
            "stripeSummary": SUMMARY,
            "cart": [{"weight": 1, "dimensions": {"length": 5, "width": 5, "height": 5}}],
        }

        change = transform_order_details(document)
        updated = _apply(document, change)

        assert set(change.set) == {"cardBrand", "cardLast4", "shippingAddress", "packageWeight", "packageDimensions"}
        assert transform_order_details(updated).without_noops(updated).is_empty()

    def test_order_details_options(self):
        job = OrderDetailsBackfill(sanity=object())

        assert job.parse_options({"pageSize": "1000", "offset": "10"})["offset"] == 10
        assert job.page_size == 500
        with pytest.raises(ValidationException):
            job.parse_options({"offset": "-5"})

    def test_clean_cart_warns_about_non_object_entries(self):
        """Las entradas que no son objetos se descartan con un warning que nombra la orden."""
        job = CleanCartItemsBackfill(sanity=object())
        document = {"_id": "order-42", "cart": [{"_key": "a1", "name": "Brake kit", "price": 10, "quantity": 2}, "junk", None]}

        with patch("app.services.backfills.orders.logger") as logger:
            change = job.transform(document)

        assert [item["_key"] for item in change.set["cart"]] == ["a1"]
        message = logger.warning.call_args.args[0]
        assert "order-42" in message
        assert "2 cart entries" in message

    def test_clean_cart_without_stray_entries_does_not_warn(self):
        job = CleanCartItemsBackfill(sanity=object())

        with patch("app.services.backfills.orders.logger") as logger:
            job.transform({"_id": "order-43", "cart": [{"_key": "a1", "price": 10}]})

        logger.warning.assert_not_called()


class TestInvoiceHelpers:
    """Tests para los helpers de facturas."""

    def test_migrate_legacy_reference(self):
        change = BackfillChange()

        migrate_legacy_reference({"order": {"_ref": "order-1"}}, "order", "orderRef", "migratedOrder", change)

        assert change.set == {"orderRef": {"_type": "reference", "_ref": "order-1"}}
        assert change.unset == ["order"]

    def test_convert_legacy_line_item(self):
        """Convierte montos de Stripe y toma el sku del carrito de la orden."""
        item = {"_type": "lineItem", "_key": "li1", "description": "Brake kit", "quantity": 2, "amount_total": 250}

        converted = convert_legacy_line_item(item, [{"name": "Brake kit", "sku": "BK-1"}], product_id="product-1")

        assert converted == {
            "_type": "invoiceLineItem",
            "_key": "li1",
            "quantity": 2,
            "description": "Brake kit",
            "unitPrice": 125,
            "lineTotal": 250,
            "sku": "BK-1",
            "product": {"_type": "reference", "_ref": "product-1"},
        }

    def test_needs_line_item_fix(self):
        assert needs_line_item_fix([{"_type": "lineItem", "_key": "a"}])
        assert needs_line_item_fix([{"_type": "invoiceLineItem"}])
        assert not needs_line_item_fix([{"_type": "invoiceLineItem", "_key": "a"}])
        assert not needs_line_item_fix(None)

    def test_invoice_number_candidates_order(self):
        candidates = invoice_number_candidates(
            {"_id": "inv-1", "invoiceNumber": "FAS-000001", "stripeSessionId": "cs_test_123456"},
            {"orderNumber": "FAS-000002"},
        )

        assert candidates[:4] == ["FAS-000001", None, "FAS-000002", "FAS-123456"]

    @pytest.mark.asyncio
    async def test_unique_number_excludes_own_documents(self):
        """La propia factura y su orden no cuentan como colisión."""
        sanity = SanityClient(project_id="proj", dataset="production", token="token")
        sanity.fetch = AsyncMock(side_effect=[1, 0])

        number = await generate_unique_invoice_number(
            sanity, ["bad", "FAS-000001", "FAS-000002"], exclude_ids=("inv-1", "order-1", None)
        )

        assert number == "FAS-000002"
        assert sanity.fetch.call_args.args[1] == {"num": "FAS-000002", "exclude": ["inv-1", "order-1"]}


class TestReferenceHelpers:
    """Tests para los helpers de repair-references."""

    def test_step_cursor(self):
        assert parse_step_cursor(step_cursor(3, "order-9")) == (3, "order-9")
        assert parse_step_cursor(None) == (0, "")
        assert parse_step_cursor("x|order-1") == (0, "")

    def test_invoice_number_from_order(self):
        assert invoice_number_from_order("FAS-123456") == "INV-123456"
        assert invoice_number_from_order("X-1") == "X-1"
        assert invoice_number_from_order(None) is None

    def test_order_customer_email(self):
        assert order_customer_email({"stripeSummary": {"customer": {"email": "Jane@X.co"}}}) == "jane@x.co"


class TestStripeJobHelpers:
    """Tests para los helpers de los backfills de Stripe."""

    def test_select_stripe_id(self):
        document = {"stripeSessionId": "cs_1", "paymentIntentId": "pi_1"}

        assert select_stripe_id(document, "checkout") == "cs_1"
        assert select_stripe_id(document, "charge") == "pi_1"
        assert select_stripe_id({"stripeSessionId": "cs_1"}, "paymentIntent") == "cs_1"

    def test_refund_event_type(self):
        assert refund_event_type({"status": "failed"}) == "refund.failed"
        assert refund_event_type({"status": "succeeded"}) == "refund.created"
        assert refund_event_type({"status": "pending"}) == "refund.updated"

    def test_should_process_refund(self):
        """Un refund ya registrado con el mismo estado y monto se omite."""
        order = {"lastRefundId": "re_1", "lastRefundStatus": "succeeded", "amountRefunded": 25.0}

        assert not should_process_refund(order, {"id": "re_1", "status": "succeeded", "amount": 2500})
        assert should_process_refund(order, {"id": "re_1", "status": "succeeded", "amount": 5000})
        assert should_process_refund(order, {"id": "re_2", "status": "succeeded", "amount": 2500})
        assert should_process_refund(order, {"id": "re_1", "status": "failed", "amount": 2500})

    def test_determine_async_outcome(self):
        assert determine_async_outcome({"status": "expired"}, None) == "expired"
        assert determine_async_outcome({"payment_status": "paid"}, None) == "success"
        assert determine_async_outcome({"payment_status": "unpaid"}, {"status": "requires_payment_method"}) == "failure"
        assert determine_async_outcome({"payment_status": "unpaid"}, {"status": "processing"}) == "failure"
        assert determine_async_outcome({"status": "open"}, {"status": "processing"}) == "pending"

    def test_checkout_expiration_diagnostics(self):
        diagnostics = checkout_expiration_diagnostics(
            {"id": "cs_1", "customer_details": {"email": "jane@x.co"}}
        )

        assert diagnostics["code"] == "checkout.session.expired"
        assert "Customer: jane@x.co." in diagnostics["message"]
        assert diagnostics["message"].endswith("(session cs_1)")

    def test_order_stripe_requires_kind(self):
        job = OrderStripeBackfill(sanity=object(), gateway=object())

        with pytest.raises(ValidationException):
            job.parse_options({})
        with pytest.raises(ValidationException):
            job.parse_options({"kind": "refund"})
        assert job.parse_options({"kind": "charge"})["kind"] == "charge"
