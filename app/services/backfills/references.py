"""
Reparación de referencias entre órdenes, facturas, customers, envíos y
sesiones de checkout.

El job recorre varios pasos en secuencia; el cursor compuesto "paso|_id"
permite reanudar en medio de cualquiera de ellos. Los enlaces de cada página
se escriben en una sola transacción.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from app.db.sanity_client import Patch, Transaction
from app.services.backfills.base import DocumentBackfillJob
from app.services.stripe_summary import parse_stripe_summary
from app.utils.id_utils import normalize_id, now_iso, reference, ref_id, to_str

logger = logging.getLogger(__name__)

PAID_ORDER_STATUSES = ("paid", "fulfilled", "shipped", "completed", "delivered")


@dataclass(frozen=True)
class RepairStep:
    name: str
    counter: str
    document_filter: str
    projection: str


REPAIR_STEPS: Tuple[RepairStep, ...] = (
    RepairStep(
        "orders_without_invoices",
        "ordersInvoiceLinked",
        '_type == "order" && status in ["paid", "fulfilled", "shipped", "completed", "delivered"] && !defined(invoiceRef)',
        "{_id, orderNumber, status, customerRef, customerEmail, stripeSummary}",
    ),
    RepairStep(
        "orders_without_customers",
        "ordersCustomerLinked",
        '_type == "order" && !defined(customerRef)',
        "{_id, orderNumber, customerName, customerEmail, stripeSummary}",
    ),
    RepairStep(
        "invoices_without_customers",
        "invoicesCustomerLinked",
        '_type == "invoice" && !defined(customerRef)',
        "{_id, orderRef, orderNumber}",
    ),
    RepairStep(
        "invoices_without_orders",
        "invoicesOrderLinked",
        '_type == "invoice" && !defined(orderRef) && defined(orderNumber)',
        "{_id, orderNumber}",
    ),
    RepairStep(
        "invoices_from_orders",
        "invoicesNormalized",
        '_type == "order" && defined(invoiceRef._ref)',
        "{_id, orderNumber, customerRef, invoiceRef}",
    ),
    RepairStep(
        "shipments_without_orders",
        "shipmentsLinked",
        '_type == "shipment" && !defined(order)',
        "{_id, reference, trackingCode, trackingNumber, stripePaymentIntentId}",
    ),
    RepairStep(
        "checkout_sessions_without_customers",
        "checkoutSessionsLinked",
        '_type == "checkoutSession" && !defined(customerRef) && defined(customerEmail)',
        "{_id, customerEmail, customerName}",
    ),
)


def parse_step_cursor(cursor: Optional[str]) -> Tuple[int, str]:
    """Cursor "paso|_id" a (índice de paso, último _id)."""
    if not cursor or "|" not in cursor:
        return 0, ""
    step, _, document_id = cursor.partition("|")
    try:
        return max(int(step), 0), document_id
    except ValueError:
        return 0, ""


def step_cursor(step_index: int, document_id: str) -> str:
    return f"{step_index}|{document_id}"


def invoice_number_from_order(order_number: Optional[str]) -> Optional[str]:
    """FAS-123456 -> INV-123456."""
    if not order_number:
        return None
    if order_number.upper().startswith("FAS-"):
        return "INV-" + order_number[4:]
    return order_number


def order_customer_email(order: Dict[str, Any]) -> Optional[str]:
    summary = parse_stripe_summary(order.get("stripeSummary")) or {}
    customer = summary.get("customer") if isinstance(summary.get("customer"), dict) else {}
    email = to_str(order.get("customerEmail")) or to_str(customer.get("email"))
    return email.lower() if email else None


class RepairReferencesBackfill(DocumentBackfillJob):
    """
    Enlaza documentos huérfanos:

    1. Órdenes pagadas sin factura (busca o crea la factura)
    2. Órdenes sin customer (busca o crea por email)
    3. Facturas sin customer (desde su orden)
    4. Facturas sin orden (por orderNumber)
    5. Facturas de órdenes con invoiceRef (orderRef, customerRef, orderNumber)
    6. Envíos sin orden (tracking, referencia o payment intent)
    7. Sesiones de checkout sin customer

    Al final reporta cuántas órdenes pagadas tienen el carrito vacío.
    """

    name = "repair-references"
    description = "Repair links between orders, invoices, customers, shipments and checkout sessions"
    page_size = 100
    counters = tuple(step.counter for step in REPAIR_STEPS) + ("customersCreated", "invoicesCreated")

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._customers_by_email: Dict[str, str] = {}

    async def fetch_page(
        self, cursor: Optional[str], limit: int, options: Dict[str, Any]
    ) -> Tuple[List[Dict[str, Any]], Optional[str], bool]:
        step_index, last_id = parse_step_cursor(cursor)
        while step_index < len(REPAIR_STEPS):
            step = REPAIR_STEPS[step_index]
            query = f"*[{step.document_filter} && _id > $cursor] | order(_id)[0...$limit]{step.projection}"
            documents = await self.sanity.fetch(query, {"cursor": last_id, "limit": limit}) or []
            if documents:
                for document in documents:
                    document["_step"] = step_index
                next_cursor = step_cursor(step_index, documents[-1]["_id"])
                has_more = len(documents) == limit or step_index + 1 < len(REPAIR_STEPS)
                if len(documents) < limit:
                    next_cursor = step_cursor(step_index + 1, "")
                return documents, next_cursor, has_more
            step_index, last_id = step_index + 1, ""
        return [], step_cursor(len(REPAIR_STEPS), ""), False

    async def prepare_page(self, documents: List[Dict[str, Any]], options: Dict[str, Any]) -> None:
        self._customers_by_email = {}

    async def process_document(
        self,
        document: Dict[str, Any],
        dry_run: bool,
        stats: Dict[str, int],
        transaction: Transaction,
        options: Dict[str, Any],
    ) -> None:
        step = REPAIR_STEPS[document["_step"]]
        handler = getattr(self, f"_repair_{step.name}")
        if await handler(document, transaction, stats):
            stats["changed"] += 1
            stats[step.counter] += 1

    async def finalize(self, stats: Dict[str, Any], dry_run: bool, options: Dict[str, Any]) -> None:
        empty_carts = await self.sanity.fetch(
            'count(*[_type == "order" && status in $statuses && (!defined(cart) || count(cart) == 0)])',
            {"statuses": list(PAID_ORDER_STATUSES)},
        ) or 0
        stats["paidOrdersWithEmptyCart"] = empty_carts
        if empty_carts:
            logger.warning(f"⚠️ {empty_carts} paid orders have empty carts")

    # === HELPERS ===

    def _link(self, transaction: Transaction, document_id: str, field_name: str, target_id: str) -> None:
        transaction.patch(Patch(document_id).set({field_name: reference(target_id)}))

    async def _find_or_create_customer(
        self, email: Optional[str], name: Optional[str], transaction: Transaction, stats: Dict[str, int]
    ) -> Optional[str]:
        if not email:
            return None
        if email in self._customers_by_email:
            return self._customers_by_email[email]

        customer_id = await self.sanity.fetch('*[_type == "customer" && lower(email) == $email][0]._id', {"email": email})
        if not customer_id:
            customer_id = str(uuid.uuid4())
            transaction.create(
                {
                    "_id": customer_id,
                    "_type": "customer",
                    "email": email,
                    "name": (name or "").strip() or email,
                    "roles": ["customer"],
                    "updatedAt": now_iso(),
                }
            )
            stats["customersCreated"] += 1
        self._customers_by_email[email] = customer_id
        return customer_id

    # === PASOS ===

    async def _repair_orders_without_invoices(self, order, transaction, stats) -> bool:
        order_id = normalize_id(order["_id"])
        order_number = to_str(order.get("orderNumber"))
        customer_id = ref_id(order.get("customerRef"))

        invoice = await self.sanity.fetch(
            '*[_type == "invoice" && (orderRef._ref == $orderId || orderNumber == $orderNumber)][0]{_id, customerRef}',
            {"orderId": order_id, "orderNumber": order_number or ""},
        )
        if not invoice:
            invoice = {"_id": str(uuid.uuid4()), "customerRef": reference(customer_id) if customer_id else None}
            document = {
                "_id": invoice["_id"],
                "_type": "invoice",
                "title": f"Invoice {order_number}" if order_number else f"Invoice for {order_id}",
                "orderNumber": order_number,
                "invoiceNumber": invoice_number_from_order(order_number),
                "status": order.get("status") or "paid",
                "orderRef": reference(order_id),
                "customerRef": invoice["customerRef"],
            }
            transaction.create({key: value for key, value in document.items() if value is not None})
            stats["invoicesCreated"] += 1

        self._link(transaction, order_id, "invoiceRef", invoice["_id"])
        self._link(transaction, invoice["_id"], "orderRef", order_id)
        if customer_id and not ref_id(invoice.get("customerRef")):
            self._link(transaction, invoice["_id"], "customerRef", customer_id)
        return True

    async def _repair_orders_without_customers(self, order, transaction, stats) -> bool:
        name = to_str(order.get("customerName")) or to_str(order.get("orderNumber"))
        customer_id = await self._find_or_create_customer(order_customer_email(order), name, transaction, stats)
        if not customer_id:
            return False
        self._link(transaction, normalize_id(order["_id"]), "customerRef", customer_id)
        return True

    async def _repair_invoices_without_customers(self, invoice, transaction, stats) -> bool:
        order_id = ref_id(invoice.get("orderRef"))
        customer_id = None
        if order_id:
            customer_id = await self.sanity.fetch(
                '*[_type == "order" && _id == $id][0].customerRef._ref', {"id": order_id}
            )
        elif invoice.get("orderNumber"):
            customer_id = await self.sanity.fetch(
                '*[_type == "order" && orderNumber == $orderNumber][0].customerRef._ref',
                {"orderNumber": invoice["orderNumber"]},
            )
        if not customer_id:
            return False
        self._link(transaction, normalize_id(invoice["_id"]), "customerRef", normalize_id(customer_id))
        return True

    async def _repair_invoices_without_orders(self, invoice, transaction, stats) -> bool:
        order_id = await self.sanity.fetch(
            '*[_type == "order" && orderNumber == $orderNumber][0]._id', {"orderNumber": invoice["orderNumber"]}
        )
        if not order_id:
            return False
        invoice_id = normalize_id(invoice["_id"])
        self._link(transaction, normalize_id(order_id), "invoiceRef", invoice_id)
        self._link(transaction, invoice_id, "orderRef", normalize_id(order_id))
        return True

    async def _repair_invoices_from_orders(self, order, transaction, stats) -> bool:
        order_id = normalize_id(order["_id"])
        invoice_id = ref_id(order.get("invoiceRef"))
        if not invoice_id:
            return False
        invoice = await self.sanity.fetch(
            '*[_type == "invoice" && _id == $id][0]{_id, orderRef, customerRef, orderNumber}', {"id": invoice_id}
        )
        if not invoice:
            return False

        order_customer_id = ref_id(order.get("customerRef"))
        values: Dict[str, Any] = {}
        if ref_id(invoice.get("orderRef")) != order_id:
            values["orderRef"] = reference(order_id)
        if order_customer_id and not ref_id(invoice.get("customerRef")):
            values["customerRef"] = reference(order_customer_id)
        if not invoice.get("orderNumber") and order.get("orderNumber"):
            values["orderNumber"] = order["orderNumber"]
        if not values:
            return False
        transaction.patch(Patch(invoice_id).set(values))
        return True

    async def _repair_shipments_without_orders(self, shipment, transaction, stats) -> bool:
        tracking = to_str(shipment.get("trackingNumber")) or to_str(shipment.get("trackingCode"))
        shipment_reference = to_str(shipment.get("reference"))
        payment_intent = to_str(shipment.get("stripePaymentIntentId"))
        if not tracking and not shipment_reference and not payment_intent:
            return False
        order_id = await self.sanity.fetch(
            '*[_type == "order" && ((defined($tracking) && trackingNumber == $tracking) || '
            "(defined($reference) && orderNumber == $reference) || "
            "(defined($paymentIntent) && paymentIntentId == $paymentIntent))][0]._id",
            {"tracking": tracking, "reference": shipment_reference, "paymentIntent": payment_intent},
        )
        if not order_id:
            return False
        self._link(transaction, normalize_id(shipment["_id"]), "order", normalize_id(order_id))
        return True

    async def _repair_checkout_sessions_without_customers(self, session, transaction, stats) -> bool:
        email = to_str(session.get("customerEmail"))
        customer_id = await self._find_or_create_customer(
            email.lower() if email else None, to_str(session.get("customerName")), transaction, stats
        )
        if not customer_id:
            return False
        self._link(transaction, normalize_id(session["_id"]), "customerRef", customer_id)
        return True
