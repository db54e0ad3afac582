"""
Backfills sobre documentos de orden: referencias legacy, carrito y detalles
de pago/envío.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from app.services.backfills.base import BackfillChange, DocumentBackfillJob, option_int
from app.services.cart_items import (
    ProductLookup,
    build_product_lookup,
    cart_needs_migration,
    clean_cart_item,
    collect_product_lookup_keys,
    fix_cart,
    has_lookup_keys,
    normalize_cart_item_fields,
)
from app.services.stripe_summary import parse_stripe_summary
from app.utils.error_handler import ValidationException
from app.utils.id_utils import reference, stable_stringify, to_int, to_number, to_str

logger = logging.getLogger(__name__)

DEFAULT_PACKAGE_DIMENSIONS = {"length": 12, "width": 9, "height": 6}
PRODUCT_PROJECTION = (
    "{_id, title, sku, slug, stripeProductId, stripeDefaultPriceId, stripePriceId, "
    "stripePrices[]{priceId}, price, salePrice}"
)


# === TRANSFORMS ===


def transform_order_references(document: Dict[str, Any]) -> BackfillChange:
    """
    customer -> customerRef y migración de items legacy del carrito.

    El campo legacy customer se elimina siempre; su referencia se copia a
    customerRef solo si la orden todavía no tiene una.
    """
    change = BackfillChange()
    customer = document.get("customer")
    if not document.get("customerRef") and isinstance(customer, dict) and customer.get("_ref"):
        change.set_field("customerRef", reference(customer["_ref"]), "migratedCustomer")
        change.unset_field("customer")
    elif customer:
        change.unset_field("customer")

    cart = document.get("cart")
    if cart_needs_migration(cart):
        change.set_field("cart", fix_cart(cart), "cartFixed")
    return change


def extract_card_details(document: Dict[str, Any]) -> Optional[Dict[str, str]]:
    """Marca y últimos 4 dígitos desde stripeSummary (paymentMethod o metadata)."""
    summary = parse_stripe_summary(document.get("stripeSummary")) or {}
    payment_method = summary.get("paymentMethod") or {}
    if payment_method.get("brand") and payment_method.get("last4"):
        return {"brand": payment_method["brand"], "last4": payment_method["last4"]}

    entries = summary.get("metadata") if isinstance(summary.get("metadata"), list) else []
    values = {entry.get("key"): entry.get("value") for entry in entries if isinstance(entry, dict)}
    if values.get("payment_method_brand") and values.get("payment_method_last4"):
        return {"brand": values["payment_method_brand"], "last4": values["payment_method_last4"]}
    return None


def _address_is_complete(address: Any) -> bool:
    return isinstance(address, dict) and all(
        address.get(key) for key in ("addressLine1", "city", "state", "postalCode")
    )


def complete_address(document: Dict[str, Any], field_name: str) -> Optional[Dict[str, Any]]:
    """
    Dirección completa desde stripeSummary para shippingAddress o billingAddress.

    Returns:
        La dirección nueva, o None si la existente ya está completa o no hay datos
    """
    existing = document.get(field_name) if isinstance(document.get(field_name), dict) else {}
    if _address_is_complete(existing):
        return None
    summary = parse_stripe_summary(document.get("stripeSummary")) or {}
    source = summary.get(field_name)
    if not isinstance(source, dict) or not source:
        return None
    return {
        "name": source.get("name") or existing.get("name") or document.get("customerName") or "",
        "email": source.get("email") or existing.get("email") or document.get("customerEmail") or "",
        "phone": source.get("phone") or existing.get("phone") or "",
        "addressLine1": source.get("line1") or existing.get("addressLine1") or "",
        "addressLine2": source.get("line2") or existing.get("addressLine2") or "",
        "city": source.get("city") or existing.get("city") or "",
        "state": source.get("state") or existing.get("state") or "",
        "postalCode": source.get("postalCode") or source.get("postal_code") or existing.get("postalCode") or "",
        "country": source.get("country") or existing.get("country") or "US",
    }


def calculate_package_weight(cart: Any, existing_weight: Any = None) -> Optional[float]:
    """Peso del paquete: suma de peso x cantidad más 1 lb de embalaje."""
    existing = to_number(existing_weight)
    if existing and existing > 0:
        return None
    if not isinstance(cart, list) or not cart:
        return None

    total = 0.0
    has_weight = False
    for item in cart:
        if not isinstance(item, dict):
            continue
        weight = to_number(item.get("weight")) or 0
        quantity = to_number(item.get("quantity")) or 1
        if weight > 0:
            total += weight * quantity
            has_weight = True
    return round(total + 1, 2) if has_weight else None


def calculate_package_dimensions(cart: Any, existing: Any = None) -> Optional[Dict[str, float]]:
    """
    Dimensiones del paquete: largo y ancho máximos, altos apilados, más 2" por lado.

    Las dimensiones existentes se respetan salvo que sean las de por defecto.
    """
    if existing and existing != DEFAULT_PACKAGE_DIMENSIONS:
        return None
    if not isinstance(cart, list) or not cart:
        return dict(DEFAULT_PACKAGE_DIMENSIONS)

    max_length = max_width = stacked_height = 0.0
    has_dimensions = False
    for item in cart:
        dimensions = item.get("dimensions") if isinstance(item, dict) else None
        if not isinstance(dimensions, dict):
            continue
        length = to_number(dimensions.get("length")) or 0
        width = to_number(dimensions.get("width")) or 0
        height = to_number(dimensions.get("height")) or 0
        if length > 0 and width > 0 and height > 0:
            quantity = to_number(item.get("quantity")) or 1
            max_length = max(max_length, length)
            max_width = max(max_width, width)
            stacked_height += height * quantity
            has_dimensions = True

    if not has_dimensions:
        return dict(DEFAULT_PACKAGE_DIMENSIONS)
    return {
        "length": round(max_length + 2, 2),
        "width": round(max_width + 2, 2),
        "height": round(stacked_height + 2, 2),
    }


def normalize_cart(cart: Any, lookup: ProductLookup) -> Tuple[List[Any], int]:
    """
    Normaliza los campos de todos los items de un carrito.

    Returns:
        Tuple: (carrito normalizado, cantidad de items que cambiaron)
    """
    if not isinstance(cart, list):
        return [], 0
    next_cart = [normalize_cart_item_fields(item, lookup) for item in cart]
    changed_items = sum(
        1 for before, after in zip(cart, next_cart) if stable_stringify(before) != stable_stringify(after)
    )
    return next_cart, changed_items


def transform_order_details(document: Dict[str, Any]) -> BackfillChange:
    """Tarjeta, direcciones, peso y dimensiones de paquete de una orden."""
    change = BackfillChange()

    brand = to_str(document.get("cardBrand"))
    last4 = to_str(document.get("cardLast4"))
    brand_missing = not brand or brand == "unknown"
    last4_missing = not last4 or last4 == "unknown"
    if brand_missing or last4_missing:
        card = extract_card_details(document)
        if card:
            if brand_missing:
                change.set_field("cardBrand", card["brand"], "cardDetailsFixed")
            if last4_missing:
                change.set_field("cardLast4", card["last4"], "cardDetailsFixed")

    shipping_address = complete_address(document, "shippingAddress")
    if shipping_address:
        change.set_field("shippingAddress", shipping_address, "shippingAddressFixed")
    billing_address = complete_address(document, "billingAddress")
    if billing_address:
        change.set_field("billingAddress", billing_address, "billingAddressFixed")

    weight = calculate_package_weight(document.get("cart"), document.get("packageWeight"))
    if weight is not None:
        change.set_field("packageWeight", weight, "packageWeightFixed")
    dimensions = calculate_package_dimensions(document.get("cart"), document.get("packageDimensions"))
    if dimensions is not None:
        change.set_field("packageDimensions", dimensions, "packageDimensionsFixed")
    return change


# === JOBS ===


class OrdersBackfill(DocumentBackfillJob):
    """Migra customer -> customerRef y tipa los items del carrito."""

    name = "orders"
    description = "Migrate legacy customer references and cart item types on orders"
    page_size = 100
    counters = ("migratedCustomer", "cartFixed")
    document_filter = '_type == "order"'
    projection = "{_id, cart, customerRef, customer}"

    def transform(self, document: Dict[str, Any]) -> BackfillChange:
        return transform_order_references(document)

    async def finalize(self, stats: Dict[str, Any], dry_run: bool, options: Dict[str, Any]) -> None:
        stats["remainingCustomer"] = await self.sanity.fetch('count(*[_type == "order" && defined(customer)])') or 0


class OrderDetailsBackfill(DocumentBackfillJob):
    """
    Completa tarjeta, direcciones y paquete desde stripeSummary y el carrito.

    Pagina por offset (pageSize por defecto 77, máximo 500) empezando en
    la opción offset.
    """

    name = "order-details"
    description = "Fill card details, addresses and package weight/dimensions on orders"
    page_size = 77
    counters = (
        "cardDetailsFixed",
        "shippingAddressFixed",
        "billingAddressFixed",
        "packageWeightFixed",
        "packageDimensionsFixed",
    )
    projection = (
        "{_id, orderNumber, cardBrand, cardLast4, shippingAddress, billingAddress, packageWeight, "
        "packageDimensions, stripeSummary, customerName, customerEmail, cart}"
    )

    def parse_options(self, options: Dict[str, Any]) -> Dict[str, Any]:
        parsed = dict(options)
        self.page_size = option_int(options, "pageSize", default=77, maximum=500)
        parsed["pageSize"] = self.page_size
        offset = to_int(options.get("offset"))
        if options.get("offset") not in (None, "") and (offset is None or offset < 0):
            raise ValidationException(
                f"Invalid offset: {options.get('offset')}", field="offset", invalid_value=options.get("offset"), status_code=400
            )
        parsed["offset"] = offset or 0
        return parsed

    async def fetch_page(
        self, cursor: Optional[str], limit: int, options: Dict[str, Any]
    ) -> Tuple[List[Dict[str, Any]], Optional[str], bool]:
        offset = int(cursor) if cursor else options.get("offset", 0)
        query = f'*[_type == "order"] | order(_createdAt desc, _id asc)[$start...$end]{self.projection}'
        documents = await self.sanity.fetch(query, {"start": offset, "end": offset + limit}) or []
        return documents, str(offset + len(documents)), len(documents) == limit

    def transform(self, document: Dict[str, Any]) -> BackfillChange:
        return transform_order_details(document)


class CartItemFieldsBackfill(DocumentBackfillJob):
    """Normaliza los campos de cada item de carrito (sku, productRef, opciones, totales)."""

    name = "cart-item-fields"
    description = "Normalize order cart item fields (sku, productRef, options, totals)"
    page_size = 100
    counters = ("normalizedItems",)
    document_filter = '_type == "order" && defined(cart)'
    projection = "{_id, cart}"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lookup = ProductLookup()

    async def prepare_page(self, documents: List[Dict[str, Any]], options: Dict[str, Any]) -> None:
        product_ids: List[str] = []
        slugs_or_ids: List[str] = []
        for document in documents:
            for item in document.get("cart") or []:
                if not isinstance(item, dict) or item.get("sku"):
                    continue
                product_ref = item.get("productRef") if isinstance(item.get("productRef"), dict) else {}
                if product_ref.get("_ref") and product_ref["_ref"] not in product_ids:
                    product_ids.append(product_ref["_ref"])
                for key in (item.get("productSlug"), item.get("id")):
                    if key and key not in slugs_or_ids:
                        slugs_or_ids.append(key)

        if not product_ids and not slugs_or_ids:
            self.lookup = ProductLookup()
            return
        result = await self.sanity.fetch(
            '{"byId": *[_type == "product" && _id in $ids]{_id, sku, slug}, '
            '"bySlug": *[_type == "product" && slug.current in $slugs]{_id, "key": slug.current, sku}}',
            {"ids": product_ids, "slugs": slugs_or_ids},
        ) or {}
        self.lookup = build_product_lookup(result.get("byId") or [], result.get("bySlug") or [])

    def transform(self, document: Dict[str, Any]) -> Optional[BackfillChange]:
        next_cart, changed_items = normalize_cart(document.get("cart"), self.lookup)
        if not changed_items:
            return None
        return BackfillChange().set_field("cart", next_cart)

    async def process_document(self, document, dry_run, stats, transaction, options) -> None:
        _, changed_items = normalize_cart(document.get("cart"), self.lookup)
        if self.apply_change(document, self.transform(document), dry_run, stats, transaction):
            stats["normalizedItems"] += changed_items


class CleanCartItemsBackfill(DocumentBackfillJob):
    """Enlaza cada item del carrito con su producto y reconcilia precios y totales."""

    name = "clean-cart-items"
    description = "Match cart items to products and reconcile prices, totals and add-ons"
    page_size = 50
    document_filter = '_type == "order" && defined(cart) && count(cart) > 0'
    projection = "{_id, cart}"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.products: List[Dict[str, Any]] = []

    async def prepare_page(self, documents: List[Dict[str, Any]], options: Dict[str, Any]) -> None:
        cart: List[Any] = []
        for document in documents:
            cart.extend(document.get("cart") or [])
        keys = collect_product_lookup_keys(cart)
        if not has_lookup_keys(keys):
            self.products = []
            return
        self.products = await self.sanity.fetch(
            '*[_type == "product" && (slug.current in $slugs || sku in $skus || title in $titles || '
            "_id in $ids || stripePriceId in $priceIds || stripeDefaultPriceId in $priceIds || "
            f"stripeProductId in $productIds || stripePrices[].priceId in $priceIds)]{PRODUCT_PROJECTION}",
            keys,
        ) or []

    def transform(self, document: Dict[str, Any]) -> Optional[BackfillChange]:
        entries = document.get("cart") or []
        cart = [item for item in entries if isinstance(item, dict)]
        if len(cart) != len(entries):
            logger.warning(
                f"⚠️ Order {document.get('_id')} has {len(entries) - len(cart)} cart entries that are not objects; "
                "they are left out of the cleaned cart"
            )
        if not cart:
            return None
        cleaned = [clean_cart_item(item, self.products) for item in cart]
        return BackfillChange().set_field("cart", cleaned)
