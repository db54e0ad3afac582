"""
Backfills que resincronizan órdenes con Stripe.

Cada job reutiliza los handlers de stripe_orders (reprocess, refunds,
expiración, pagos asíncronos) para que el resultado sea el mismo que el de
un webhook entregado a tiempo.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from app.core.config import get_settings
from app.services.backfills.base import BackfillJob, DocumentBackfillJob, option_choice, option_str
from app.services.stripe_orders import (
    handle_checkout_async_payment,
    handle_checkout_expired,
    handle_refund_event,
    reprocess_stripe_session,
    resolve_payment_failure_diagnostics,
)
from app.services.stripe_summary import build_stripe_summary
from app.utils.error_handler import ExternalAPIException, ValidationException
from app.utils.id_utils import id_variants, normalize_id, now_iso, ref_id, to_number, to_str, to_unix_seconds, unix_to_iso

logger = logging.getLogger(__name__)

ORDER_STRIPE_FILTERS = {
    "checkout": (
        '_type == "order" && defined(stripeSessionId) && ('
        '!defined(stripeCheckoutStatus) || stripeCheckoutStatus == "" || '
        '!defined(stripeCreatedAt) || !defined(totalAmount))'
    ),
    "paymentIntent": (
        '_type == "order" && (defined(paymentIntentId) || defined(stripeSessionId)) && ('
        '!defined(paymentIntentId) || paymentIntentId == "" || '
        '!defined(stripePaymentIntentStatus) || stripePaymentIntentStatus == "")'
    ),
    "charge": (
        '_type == "order" && (defined(paymentIntentId) || defined(stripeSessionId)) && ('
        '!defined(chargeId) || chargeId == "" || !defined(cardBrand) || cardBrand == "" || '
        '!defined(receiptUrl) || receiptUrl == "")'
    ),
}

ASYNC_TARGET_STATUSES = [
    "processing",
    "requires_action",
    "requires_payment_method",
    "requires_confirmation",
    "requires_capture",
    "requires_customer_action",
    "async_payment_in_progress",
    "pending",
    "open",
    "unpaid",
    "failed",
    "canceled",
    "cancelled",
    "incomplete",
    "incomplete_expired",
]

FAILURE_TARGET_STATUSES = [
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "requires_capture",
    "processing",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "unpaid",
    "past_due",
    "requires_source",
    "requires_source_action",
    "requires_customer_action",
]

STRIPE_EVENTS_PAGE_MAX = 100


def select_stripe_id(document: Dict[str, Any], kind: str) -> Optional[str]:
    """Id que se reprocesa según el tipo de backfill."""
    if kind == "checkout":
        return to_str(document.get("stripeSessionId"))
    return to_str(document.get("paymentIntentId")) or to_str(document.get("stripeSessionId"))


def refund_event_type(refund: Dict[str, Any]) -> str:
    status = (to_str(refund.get("status")) or "").lower()
    if status == "failed":
        return "refund.failed"
    if status == "succeeded":
        return "refund.created"
    return "refund.updated"


def should_process_refund(order: Dict[str, Any], refund: Dict[str, Any]) -> bool:
    """Un refund se aplica si cambia el último id, su estado o el monto registrado."""
    last_refund_id = to_str(order.get("lastRefundId"))
    if not last_refund_id or last_refund_id != refund.get("id"):
        return True
    if (to_str(order.get("lastRefundStatus")) or "").lower() != (to_str(refund.get("status")) or "").lower():
        return True
    recorded = to_number(order.get("amountRefunded"))
    amount = to_number(refund.get("amount"))
    if recorded is not None and amount is not None:
        return abs(amount / 100 - recorded) >= 0.01
    return False


def determine_async_outcome(session: Dict[str, Any], payment_intent: Optional[Dict[str, Any]]) -> str:
    """
    Resultado de un pago asíncrono a partir de la sesión y su payment intent.

    Returns:
        str: "success", "failure", "pending" o "expired"
    """
    session_status = (to_str(session.get("status")) or "").lower()
    session_payment_status = (to_str(session.get("payment_status")) or "").lower()
    intent_status = (to_str((payment_intent or {}).get("status")) or "").lower()

    if session_status == "expired":
        return "expired"
    if session_payment_status in ("paid", "succeeded", "complete", "no_payment_required") or intent_status in (
        "succeeded",
        "requires_capture",
    ):
        return "success"
    if (
        session_payment_status in ("unpaid", "failed", "canceled", "cancelled")
        or intent_status in ("canceled", "cancelled")
        or (intent_status == "requires_payment_method" and session_payment_status == "unpaid")
    ):
        return "failure"
    return "pending"


def checkout_expiration_diagnostics(session: Dict[str, Any]) -> Dict[str, str]:
    """Código y mensaje de fallo para una sesión que expiró sin pago."""
    customer_details = session.get("customer_details") or {}
    metadata = session.get("metadata") or {}
    email = (
        to_str(customer_details.get("email"))
        or to_str(session.get("customer_email"))
        or to_str(metadata.get("customer_email"))
    )
    message = "Checkout session expired before payment was completed."
    if email:
        message = f"{message} Customer: {email}."
    expires_at = unix_to_iso(session.get("expires_at")) if session.get("expires_at") is not None else None
    if expires_at:
        message = f"{message} Expired at {expires_at}."
    return {"code": "checkout.session.expired", "message": f"{message} (session {session.get('id')})"}


class StripeOrderBackfill(DocumentBackfillJob):
    """Base de los backfills de órdenes: filtro opcional por orderId."""

    target_filter = '_type == "order"'

    def build_filter(self, options: Dict[str, Any]) -> str:
        if options.get("orderId"):
            return '_type == "order" && _id in $orderIds'
        return self.target_filter

    def query_params(self, options: Dict[str, Any]) -> Dict[str, Any]:
        if options.get("orderId"):
            return {"orderIds": id_variants(options["orderId"])}
        return {}


class OrderStripeBackfill(StripeOrderBackfill):
    """Reprocesa órdenes a las que les faltan datos de checkout, payment intent o charge."""

    name = "order-stripe"
    description = "Reprocess orders missing checkout, payment intent or charge data from Stripe"
    page_size = 25
    counters = ("succeeded",)
    projection = "{_id, orderNumber, stripeSessionId, paymentIntentId}"

    def parse_options(self, options: Dict[str, Any]) -> Dict[str, Any]:
        parsed = dict(options)
        if not option_str(options, "kind"):
            raise ValidationException('Missing required option "kind"', field="kind", status_code=400)
        parsed["kind"] = option_choice(options, "kind", tuple(ORDER_STRIPE_FILTERS))
        parsed["id"] = option_str(options, "id")
        return parsed

    def build_filter(self, options: Dict[str, Any]) -> str:
        return ORDER_STRIPE_FILTERS[options["kind"]]

    async def fetch_page(
        self, cursor: Optional[str], limit: int, options: Dict[str, Any]
    ) -> Tuple[List[Dict[str, Any]], Optional[str], bool]:
        if options.get("id"):
            # Un id explícito se procesa una sola vez
            if cursor:
                return [], cursor, False
            return [{"_id": options["id"], "stripeId": options["id"]}], options["id"], False
        return await super().fetch_page(cursor, limit, options)

    async def process_document(self, document, dry_run, stats, transaction, options) -> None:
        stripe_id = document.get("stripeId") or select_stripe_id(document, options["kind"])
        if not stripe_id:
            logger.info(f"ℹ️ Skipping {document['_id']}: missing Stripe identifier")
            return
        stats["changed"] += 1
        if dry_run:
            return
        await reprocess_stripe_session(stripe_id, sanity=self.sanity, gateway=self.gateway)
        stats["succeeded"] += 1


class OrderShippingBackfill(StripeOrderBackfill):
    """
    Reprocesa órdenes de checkout sin servicio de envío o carrier.

    Las órdenes de cada página se reprocesan en paralelo, limitadas por
    BACKFILL_ORDER_SHIPPING_CONCURRENCY.
    """

    name = "order-shipping"
    description = "Reprocess checkout orders missing the selected shipping service or carrier"
    page_size = 50
    counters = ("succeeded",)
    target_filter = (
        '_type == "order" && defined(stripeSessionId) && '
        "(!defined(selectedService) || !defined(selectedService.serviceCode) || !defined(shippingCarrier))"
    )
    projection = "{_id, orderNumber, stripeSessionId, shippingCarrier, selectedService}"

    def build_filter(self, options: Dict[str, Any]) -> str:
        if options.get("sessionId"):
            return '_type == "order" && defined(stripeSessionId) && stripeSessionId == $sessionId'
        return super().build_filter(options)

    def query_params(self, options: Dict[str, Any]) -> Dict[str, Any]:
        if options.get("sessionId"):
            return {"sessionId": options["sessionId"]}
        return super().query_params(options)

    async def process_page(
        self, documents: List[Dict[str, Any]], dry_run: bool, stats: Dict[str, int], options: Dict[str, Any]
    ) -> None:
        semaphore = asyncio.Semaphore(max(1, min(get_settings().BACKFILL_ORDER_SHIPPING_CONCURRENCY, len(documents))))

        async def reprocess(document: Dict[str, Any]) -> bool:
            session_id = to_str(document.get("stripeSessionId"))
            if not session_id:
                return False
            if dry_run:
                return True
            async with semaphore:
                await reprocess_stripe_session(session_id, sanity=self.sanity, gateway=self.gateway)
            return True

        outcomes = await asyncio.gather(*(reprocess(document) for document in documents), return_exceptions=True)
        for document, outcome in zip(documents, outcomes):
            stats["total"] += 1
            self.error_aggregator.increment_processed()
            if isinstance(outcome, BaseException):
                self.record_failure(document, outcome, stats)
            elif outcome:
                stats["changed"] += 1
                if not dry_run:
                    stats["succeeded"] += 1


class RefundsBackfill(StripeOrderBackfill):
    """Aplica los refunds de Stripe que las órdenes todavía no registran."""

    name = "refunds"
    description = "Apply Stripe refunds missing from orders"
    page_size = 25
    counters = ("refundsEvaluated", "applied")
    target_filter = (
        '_type == "order" && (defined(paymentIntentId) || defined(chargeId)) && ('
        '!defined(lastRefundId) || lastRefundId == "" || !defined(lastRefundStatus) || lastRefundStatus == "" || '
        '!defined(amountRefunded) || amountRefunded == 0 || paymentStatus in ["refunded", "partially_refunded"])'
    )
    projection = "{_id, orderNumber, paymentIntentId, chargeId, stripeSessionId, amountRefunded, lastRefundId, lastRefundStatus, paymentStatus}"

    def build_filter(self, options: Dict[str, Any]) -> str:
        if options.get("paymentIntentId") and not options.get("orderId"):
            return '_type == "order" && paymentIntentId == $paymentIntentId'
        return super().build_filter(options)

    def query_params(self, options: Dict[str, Any]) -> Dict[str, Any]:
        if options.get("paymentIntentId") and not options.get("orderId"):
            return {"paymentIntentId": options["paymentIntentId"]}
        return super().query_params(options)

    async def list_refunds(self, order: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Refunds del payment intent o, si no hay, del charge de la orden."""
        for stripe_id in (to_str(order.get("paymentIntentId")), to_str(order.get("chargeId"))):
            if not stripe_id:
                continue
            params = {"payment_intent": stripe_id} if stripe_id.startswith("pi_") else {"charge": stripe_id}
            try:
                page = await self.gateway.list_refunds(limit=100, **params)
            except ExternalAPIException as e:
                logger.warning(f"⚠️ Unable to list refunds for {order['_id']} ({stripe_id}): {e.message}")
                continue
            refunds = page.get("data") or []
            if refunds:
                return sorted(refunds, key=lambda refund: refund.get("created") or 0)
        return []

    async def process_document(self, document, dry_run, stats, transaction, options) -> None:
        applied = False
        for refund in await self.list_refunds(document):
            stats["refundsEvaluated"] += 1
            if not should_process_refund(document, refund):
                continue
            applied = True
            if dry_run:
                continue
            event = {
                "id": f"evt_backfill_{refund.get('id') or document['_id']}",
                "type": refund_event_type(refund),
                "created": refund.get("created"),
                "data": {"object": refund},
            }
            await handle_refund_event(event, sanity=self.sanity, gateway=self.gateway)
            stats["applied"] += 1
        if applied:
            stats["changed"] += 1


class ExpiredCheckoutsBackfill(BackfillJob):
    """
    Reproduce los eventos checkout.session.expired de Stripe.

    Pagina la lista de eventos de Stripe (opción since como límite inferior
    de fecha) o procesa una sola sesión con la opción sessionId. Los eventos
    ya registrados en una orden o expiredCart se saltean.
    """

    name = "expired-checkouts"
    description = "Replay Stripe checkout.session.expired events into orders and expired carts"
    page_size = STRIPE_EVENTS_PAGE_MAX
    counters = ("succeeded", "skipped")

    def parse_options(self, options: Dict[str, Any]) -> Dict[str, Any]:
        parsed = dict(options)
        parsed["sessionId"] = option_str(options, "sessionId")
        since = option_str(options, "since")
        parsed["since"] = to_unix_seconds(since) if since else None
        if since and parsed["since"] is None:
            raise ValidationException(f"Invalid since: {since}", field="since", invalid_value=since, status_code=400)
        return parsed

    async def fetch_page(
        self, cursor: Optional[str], limit: int, options: Dict[str, Any]
    ) -> Tuple[List[Dict[str, Any]], Optional[str], bool]:
        if options.get("sessionId"):
            if cursor:
                return [], cursor, False
            session = await self.gateway.retrieve_checkout_session(options["sessionId"])
            if (to_str(session.get("status")) or "").lower() != "expired":
                logger.info(f"ℹ️ Skipping {session.get('id')}: status={session.get('status')} is not expired")
                return [], options["sessionId"], False
            return [{"_id": session["id"], "session": session, "eventId": None, "created": session.get("created")}], session["id"], False

        params: Dict[str, Any] = {"type": "checkout.session.expired", "limit": min(limit, STRIPE_EVENTS_PAGE_MAX)}
        if cursor:
            params["starting_after"] = cursor
        if options.get("since"):
            params["created"] = {"gte": options["since"]}
        page = await self.gateway.list_events(**params)
        events = page.get("data") or []
        documents = [
            {"_id": event["id"], "eventId": event["id"], "session": (event.get("data") or {}).get("object") or {}, "created": event.get("created")}
            for event in events
        ]
        next_cursor = events[-1]["id"] if events else cursor
        return documents, next_cursor, bool(page.get("has_more")) and bool(events)

    async def already_recorded(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        count = await self.sanity.fetch(
            'count(*[(_type == "order" && $eventId in orderEvents[].stripeEventId) || '
            '(_type == "expiredCart" && $eventId in events[].stripeEventId)])',
            {"eventId": event_id},
        )
        return bool(count)

    async def process_page(
        self, documents: List[Dict[str, Any]], dry_run: bool, stats: Dict[str, int], options: Dict[str, Any]
    ) -> None:
        for document in documents:
            stats["total"] += 1
            self.error_aggregator.increment_processed()
            session = document.get("session") or {}
            if not session.get("id"):
                stats["skipped"] += 1
                continue
            try:
                if await self.already_recorded(document.get("eventId")):
                    stats["skipped"] += 1
                    continue
                stats["changed"] += 1
                if dry_run:
                    continue
                await handle_checkout_expired(
                    session,
                    stripe_event_id=document.get("eventId"),
                    event_created=document.get("created"),
                    sanity=self.sanity,
                    gateway=self.gateway,
                )
                stats["succeeded"] += 1
            except Exception as e:
                self.record_failure(document, e, stats)


class CheckoutAsyncPaymentsBackfill(StripeOrderBackfill):
    """Aplica el resultado final de pagos asíncronos de checkout que quedaron pendientes."""

    name = "checkout-async-payments"
    description = "Apply final async payment outcomes to pending checkout orders"
    page_size = 200
    counters = ("skipped",)
    target_filter = (
        '_type == "order" && stripeSource == "checkout.session" && defined(stripeSessionId) && '
        '(!defined(paymentStatus) || paymentStatus == "" || paymentStatus in $targetStatuses)'
    )
    projection = "{_id, orderNumber, stripeSessionId, paymentStatus, status, stripeCheckoutStatus, stripePaymentIntentStatus}"

    def parse_options(self, options: Dict[str, Any]) -> Dict[str, Any]:
        parsed = dict(options)
        parsed["status"] = option_choice(options, "status", ("all", "success", "failure"), default="all")
        return parsed

    def build_filter(self, options: Dict[str, Any]) -> str:
        if options.get("sessionId"):
            return '_type == "order" && stripeSource == "checkout.session" && stripeSessionId == $sessionId'
        if options.get("orderId"):
            return '_type == "order" && stripeSource == "checkout.session" && _id in $orderIds'
        return self.target_filter

    def query_params(self, options: Dict[str, Any]) -> Dict[str, Any]:
        if options.get("sessionId"):
            return {"sessionId": options["sessionId"]}
        if options.get("orderId"):
            return {"orderIds": id_variants(options["orderId"])}
        return {"targetStatuses": ASYNC_TARGET_STATUSES}

    async def process_document(self, document, dry_run, stats, transaction, options) -> None:
        session = await self.gateway.retrieve_checkout_session(document["stripeSessionId"], expand=["payment_intent"])
        payment_intent = session.get("payment_intent") if isinstance(session.get("payment_intent"), dict) else None
        outcome = determine_async_outcome(session, payment_intent)
        payment_status = (to_str(document.get("paymentStatus")) or "").lower()
        order_status = (to_str(document.get("status")) or "").lower()

        skip = (
            outcome in ("expired", "pending")
            or (options["status"] != "all" and outcome != options["status"])
            or (outcome == "success" and payment_status == "paid")
            or (
                outcome == "failure"
                and payment_status in ("cancelled", "canceled", "failed")
                and order_status == "cancelled"
            )
        )
        if skip:
            stats["skipped"] += 1
            return

        stats["changed"] += 1
        if dry_run:
            return
        await handle_checkout_async_payment(
            session, outcome, event_created=int(time.time()), sanity=self.sanity, gateway=self.gateway
        )


class PaymentFailuresBackfill(StripeOrderBackfill):
    """
    Completa código y mensaje de fallo de pago en órdenes y facturas.

    Con payment intent se usan los diagnósticos del intent y su charge; con
    solo una sesión de checkout se registra la expiración. La orden se
    parchea únicamente con los valores que cambian.
    """

    name = "payment-failures"
    description = "Fill payment failure code and message on orders and invoices"
    page_size = 100
    counters = ("invoicesUpdated", "skipped")
    target_filter = (
        '_type == "order" && (defined(paymentIntentId) || defined(stripeSessionId)) && '
        '(!defined(paymentFailureCode) || paymentFailureCode == "" || !defined(paymentFailureMessage) || paymentFailureMessage == "") && '
        "(!defined(paymentStatus) || paymentStatus in $statuses)"
    )
    projection = (
        "{_id, orderNumber, paymentIntentId, chargeId, stripeSessionId, paymentStatus, status, "
        "paymentFailureCode, paymentFailureMessage, invoiceRef}"
    )

    def build_filter(self, options: Dict[str, Any]) -> str:
        if options.get("orderId"):
            return super().build_filter(options)
        if options.get("orderNumber"):
            return '_type == "order" && orderNumber == $orderNumber'
        if options.get("paymentIntentId"):
            return '_type == "order" && paymentIntentId == $paymentIntentId'
        return self.target_filter

    def query_params(self, options: Dict[str, Any]) -> Dict[str, Any]:
        if options.get("orderId"):
            return super().query_params(options)
        if options.get("orderNumber"):
            return {"orderNumber": options["orderNumber"].strip().upper()}
        if options.get("paymentIntentId"):
            return {"paymentIntentId": options["paymentIntentId"]}
        return {"statuses": FAILURE_TARGET_STATUSES}

    async def fetch_payment_intent(self, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Payment intent de la orden, directo o a través de su sesión de checkout."""
        payment_intent_id = to_str(order.get("paymentIntentId"))
        if payment_intent_id:
            try:
                return await self.gateway.retrieve_payment_intent(payment_intent_id)
            except ExternalAPIException as e:
                logger.warning(f"⚠️ Unable to load payment intent {payment_intent_id}: {e.message}")

        session_id = to_str(order.get("stripeSessionId"))
        if session_id:
            try:
                session = await self.gateway.retrieve_checkout_session(session_id, expand=["payment_intent"])
            except ExternalAPIException as e:
                logger.warning(f"⚠️ Unable to load checkout session {session_id}: {e.message}")
                return None
            intent = session.get("payment_intent")
            if isinstance(intent, dict) and intent.get("id"):
                return intent
            if isinstance(intent, str):
                try:
                    return await self.gateway.retrieve_payment_intent(intent)
                except ExternalAPIException as e:
                    logger.warning(f"⚠️ Unable to load payment intent {intent}: {e.message}")
        return None

    async def find_invoice_id(self, order: Dict[str, Any], payment_intent_id: Optional[str]) -> Optional[str]:
        invoice_id = ref_id(order.get("invoiceRef"))
        if invoice_id:
            return invoice_id
        if payment_intent_id:
            found = await self.sanity.fetch('*[_type == "invoice" && paymentIntentId == $pi][0]._id', {"pi": payment_intent_id})
            if found:
                return normalize_id(found)
        if order.get("orderNumber"):
            found = await self.sanity.fetch(
                '*[_type == "invoice" && (orderNumber == $orderNumber || orderRef._ref == $orderId)][0]._id',
                {"orderNumber": order["orderNumber"], "orderId": normalize_id(order["_id"])},
            )
            if found:
                return normalize_id(found)
        return None

    async def process_document(self, document, dry_run, stats, transaction, options) -> None:
        payment_intent = await self.fetch_payment_intent(document)
        session = None
        order_status = invoice_status = None

        if payment_intent:
            diagnostics = await resolve_payment_failure_diagnostics(payment_intent, gateway=self.gateway)
            intent_status = (to_str(payment_intent.get("status")) or "").lower()
            payment_status = (
                "failed"
                if intent_status and intent_status not in ("succeeded", "processing", "requires_capture")
                else intent_status or None
            )
            if intent_status == "canceled":
                order_status = invoice_status = "cancelled"
            invoice_stripe_status = "payment_intent.payment_failed"
        elif document.get("stripeSessionId"):
            try:
                session = await self.gateway.retrieve_checkout_session(document["stripeSessionId"], expand=["payment_intent"])
            except ExternalAPIException as e:
                logger.warning(f"⚠️ Checkout session {document['stripeSessionId']} not found: {e.message}")
                stats["skipped"] += 1
                return
            diagnostics = checkout_expiration_diagnostics(session)
            payment_status = order_status = invoice_status = "expired"
            invoice_stripe_status = "checkout.session.expired"
        else:
            stats["skipped"] += 1
            return

        values: Dict[str, Any] = {}
        if diagnostics.get("code") and diagnostics["code"] != (to_str(document.get("paymentFailureCode")) or ""):
            values["paymentFailureCode"] = diagnostics["code"]
        if diagnostics.get("message") and diagnostics["message"] != (to_str(document.get("paymentFailureMessage")) or ""):
            values["paymentFailureMessage"] = diagnostics["message"]
        if payment_status and payment_status != document.get("paymentStatus"):
            values["paymentStatus"] = payment_status
        if order_status and order_status != document.get("status"):
            values["status"] = order_status
        if not values:
            stats["skipped"] += 1
            return

        summary = build_stripe_summary(
            session=session,
            payment_intent=payment_intent,
            failure_code=diagnostics.get("code"),
            failure_message=diagnostics.get("message"),
        )
        if summary:
            values["stripeSummary"] = summary
        values["stripeLastSyncedAt"] = now_iso()
        stats["changed"] += 1

        invoice_id = await self.find_invoice_id(document, (payment_intent or {}).get("id"))
        invoice_values = {
            key: value
            for key, value in {
                "paymentFailureCode": diagnostics.get("code"),
                "paymentFailureMessage": diagnostics.get("message"),
                "status": invoice_status or ("cancelled" if payment_status == "canceled" else None),
                "stripeInvoiceStatus": invoice_stripe_status,
                "stripeSummary": summary or None,
                "stripeLastSyncedAt": values["stripeLastSyncedAt"],
            }.items()
            if value is not None
        }
        if invoice_id:
            stats["invoicesUpdated"] += 1
        if dry_run:
            return

        await self.sanity.patch(normalize_id(document["_id"])).set(values).commit()
        if invoice_id:
            await self.sanity.patch(invoice_id).set(invoice_values).commit()
