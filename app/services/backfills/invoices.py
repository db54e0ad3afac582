"""
Backfill de invoices: referencias legacy, line items y números de factura
únicos.
"""

import logging
import random
import time
from typing import Any, Dict, Iterable, List, Optional

from app.db.sanity_client import SanityClient
from app.services.backfills.base import BackfillChange, DocumentBackfillJob
from app.utils.id_utils import (
    ORDER_NUMBER_PREFIX,
    candidate_from_session_id,
    new_key,
    reference,
    ref_id,
    sanitize_order_number,
    to_number,
    to_str,
)

logger = logging.getLogger(__name__)

NUMBER_IN_USE_QUERY = (
    'count(*[_type == "order" && orderNumber == $num && !(_id in $exclude)]) + '
    'count(*[_type == "invoice" && (orderNumber == $num || invoiceNumber == $num) && !(_id in $exclude)])'
)
RANDOM_ATTEMPTS = 8


def migrate_legacy_reference(document: Dict[str, Any], legacy: str, target: str, counter: str, change: BackfillChange) -> None:
    """Mueve legacy._ref a target si falta; el campo legacy se elimina siempre."""
    legacy_value = document.get(legacy)
    if not document.get(target) and isinstance(legacy_value, dict) and legacy_value.get("_ref"):
        change.set_field(target, reference(legacy_value["_ref"]), counter)
        change.unset_field(legacy)
    elif legacy_value:
        change.unset_field(legacy)


def convert_legacy_line_item(
    item: Dict[str, Any], order_cart: List[Dict[str, Any]], product_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    lineItem legacy (montos de Stripe) a invoiceLineItem.

    El sku sale del item del carrito de la orden con el mismo nombre.
    """
    quantity = to_number(item.get("quantity")) or 1
    if quantity <= 0:
        quantity = 1
    line_total = to_number(item.get("amount_total")) or to_number(item.get("line_total")) or 0
    description = to_str(item.get("description")) or to_str(item.get("name"))
    sku = legacy_item_sku(item, order_cart)

    converted: Dict[str, Any] = {"_type": "invoiceLineItem", "_key": item.get("_key") or new_key(), "quantity": quantity}
    if description:
        converted["description"] = description
    if line_total > 0:
        converted["unitPrice"] = line_total / quantity
        converted["lineTotal"] = line_total
    if sku:
        converted["sku"] = sku
    if product_id:
        converted["product"] = reference(product_id)
    return converted


def legacy_item_sku(item: Dict[str, Any], order_cart: List[Dict[str, Any]]) -> Optional[str]:
    description = to_str(item.get("description")) or to_str(item.get("name")) or ""
    for cart_item in order_cart:
        if isinstance(cart_item, dict) and (to_str(cart_item.get("name")) or "") == description:
            return to_str(cart_item.get("sku"))
    return None


def needs_line_item_fix(line_items: Any) -> bool:
    if not isinstance(line_items, list):
        return False
    return any(isinstance(item, dict) and (not item.get("_key") or item.get("_type") == "lineItem") for item in line_items)


def invoice_number_candidates(document: Dict[str, Any], order: Optional[Dict[str, Any]]) -> List[Any]:
    """Candidatos a número de factura en orden de preferencia."""
    legacy_order = document.get("order") if isinstance(document.get("order"), dict) else {}
    return [
        document.get("invoiceNumber"),
        document.get("orderNumber"),
        (order or {}).get("orderNumber"),
        candidate_from_session_id(document.get("stripeSessionId")),
        candidate_from_session_id(legacy_order.get("stripeSessionId")),
        ref_id(document.get("orderRef")) or ref_id(document.get("order")),
        document.get("_id"),
    ]


async def generate_unique_invoice_number(
    sanity: SanityClient, candidates: Iterable[Any], exclude_ids: Iterable[str] = ()
) -> str:
    """
    Primer candidato válido (FAS-NNNNNN) que no usa otra orden o factura.

    Los documentos de exclude_ids (la propia factura y su orden) no cuentan
    como colisión. Sin candidatos libres se prueban números aleatorios y al
    final uno derivado del reloj.
    """
    exclude = [document_id for document_id in exclude_ids if document_id]
    for candidate in candidates:
        sanitized = sanitize_order_number(candidate)
        if not sanitized:
            continue
        if not await sanity.fetch(NUMBER_IN_USE_QUERY, {"num": sanitized, "exclude": exclude}):
            return sanitized

    for _ in range(RANDOM_ATTEMPTS):
        candidate = f"{ORDER_NUMBER_PREFIX}-{random.randint(0, 999999):06d}"
        if not await sanity.fetch(NUMBER_IN_USE_QUERY, {"num": candidate, "exclude": exclude}):
            return candidate
    return f"{ORDER_NUMBER_PREFIX}-{int(time.time() * 1000) % 1_000_000:06d}"


class InvoicesBackfill(DocumentBackfillJob):
    """
    Migra customer/order a customerRef/orderRef, convierte line items legacy
    y asigna números de factura únicos sincronizados con la orden.
    """

    name = "invoices"
    description = "Migrate invoice references, line items and invoice numbers"
    page_size = 100
    counters = ("migratedCustomer", "migratedOrder", "itemsFixed", "legacyConverted")
    document_filter = '_type == "invoice"'
    projection = "{_id, lineItems, customerRef, customer, orderRef, order, invoiceNumber, orderNumber, stripeSessionId}"

    async def _product_id(self, sku: Optional[str], title: Optional[str]) -> Optional[str]:
        if sku:
            product_id = await self.sanity.fetch('*[_type == "product" && sku == $sku][0]._id', {"sku": sku})
            if product_id:
                return product_id
        if title:
            return await self.sanity.fetch('*[_type == "product" && title == $t][0]._id', {"t": title})
        return None

    async def _line_items(self, line_items: List[Any], order_cart: List[Dict[str, Any]]) -> List[Any]:
        result = []
        for item in line_items:
            if not isinstance(item, dict):
                result.append(item)
            elif item.get("_type") == "lineItem":
                title = to_str(item.get("description")) or to_str(item.get("name"))
                product_id = await self._product_id(legacy_item_sku(item, order_cart), title)
                result.append(convert_legacy_line_item(item, order_cart, product_id))
            elif not item.get("_key"):
                result.append({**item, "_key": new_key()})
            else:
                result.append(item)
        return result

    async def plan(self, document: Dict[str, Any], options: Dict[str, Any]) -> BackfillChange:
        change = BackfillChange()
        order_id = ref_id(document.get("orderRef")) or ref_id(document.get("order"))
        order = None
        if order_id:
            order = await self.sanity.fetch('*[_type == "order" && _id == $id][0]{_id, orderNumber, cart}', {"id": order_id})

        migrate_legacy_reference(document, "customer", "customerRef", "migratedCustomer", change)
        migrate_legacy_reference(document, "order", "orderRef", "migratedOrder", change)

        line_items = document.get("lineItems")
        if needs_line_item_fix(line_items):
            order_cart = (order or {}).get("cart") if isinstance((order or {}).get("cart"), list) else []
            change.set_field("lineItems", await self._line_items(line_items, order_cart), "itemsFixed")
            if any(isinstance(item, dict) and item.get("_type") == "lineItem" for item in line_items):
                change.count("legacyConverted")

        invoice_number = await generate_unique_invoice_number(
            self.sanity, invoice_number_candidates(document, order), exclude_ids=(document["_id"], order_id)
        )
        if invoice_number != document.get("invoiceNumber"):
            change.set_field("invoiceNumber", invoice_number)

        order_number = sanitize_order_number((order or {}).get("orderNumber"))
        if order_number:
            change.set_field("orderNumber", order_number)
        elif order_id and "invoiceNumber" in change.set:
            change.set_field("orderNumber", change.set["invoiceNumber"])
        return change
