"""
Mapeo y normalización de items de carrito de órdenes.

Todas las funciones de este módulo son puras: reciben un item (o line item de
Stripe) y devuelven uno nuevo sin tocar el original. Aplicar cualquier
normalización sobre su propia salida no produce cambios, lo que permite
correr los backfills tantas veces como haga falta.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.utils.id_utils import looks_like_cms_id, new_key, reference, slugify, to_number, to_str

logger = logging.getLogger(__name__)

CART_ITEM_TYPE = "orderCartItem"
CART_METADATA_TYPE = "orderCartItemMeta"

OPTION_KEYWORDS = ("option", "vehicle", "fitment", "model", "variant", "trim", "package")
UPGRADE_KEYWORDS = ("upgrade", "addon", "add_on", "add-on")
IGNORE_OPTION_KEYS = ("shipping_option", "shipping_options", "shippingoption")
SKU_METADATA_KEYS = ("sanity_sku", "sku", "SKU", "product_sku")

_OPTION_PAIR_RE = re.compile(r"^option(?:[_-]?|)([a-z0-9]+)?[_-]?(name|value)$")
_UPGRADE_LABEL_RE = re.compile(r"^(upgrade|add-?on|accessory)\s*:\s*", re.IGNORECASE)
_UPGRADE_PREFIX_RE = re.compile(r"^Upgrade:\s*", re.IGNORECASE)
_OPTION_PREFIX_RE = re.compile(r"^option\s*\d*\s*:?\s*", re.IGNORECASE)
_ADDON_PREFIX_RE = re.compile(r"^(upgrade|add[-\s]?on)s?\s*:?\s*", re.IGNORECASE)


@dataclass
class ProductLookup:
    """Índices de productos usados para completar sku y productRef."""

    sku_by_id: Dict[str, str] = field(default_factory=dict)
    sku_by_slug_or_id: Dict[str, str] = field(default_factory=dict)
    id_by_slug: Dict[str, str] = field(default_factory=dict)


# === HELPERS ===


def _metadata_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)):
        return str(value)
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return None


def _normalize_record(record: Any) -> Dict[str, str]:
    result: Dict[str, str] = {}
    if not isinstance(record, dict):
        return result
    for raw_key, raw_value in record.items():
        key = str(raw_key or "").strip()
        value = _metadata_value(raw_value)
        if key and value:
            result[key] = value
    return result


def _collect_metadata(sources: Iterable[Tuple[str, Any]]) -> Tuple[Dict[str, str], List[Dict[str, str]]]:
    """Junta la metadata de varias fuentes; gana el primer valor de cada clave."""
    combined: Dict[str, str] = {}
    entries: List[Dict[str, str]] = []
    for source, data in sources:
        for key, value in _normalize_record(data).items():
            entries.append({"_type": CART_METADATA_TYPE, "key": key, "value": value, "source": source})
            combined.setdefault(key, value)
    return combined, entries


def _pick_first(mapping: Dict[str, str], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        if mapping.get(key):
            return mapping[key]
    return None


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(value for value in values if value))


def humanize(text: str) -> str:
    """'vehicle_model' -> 'Vehicle Model', 'trimLevel' -> 'Trim Level'."""
    if not text:
        return ""
    spaced = re.sub(r"[_\-.]+", " ", text)
    spaced = re.sub(r"([a-z])([A-Z])", r"\1 \2", spaced)
    return " ".join(part[:1].upper() + part[1:] for part in spaced.split(" ") if part)


def _extract_categories(product: Optional[Dict[str, Any]], metadata: Dict[str, str]) -> Optional[List[str]]:
    categories: List[str] = []
    product_metadata = (product or {}).get("metadata") or {}

    def add_from_value(value: Optional[str]):
        trimmed = (value or "").strip()
        if not trimmed:
            return
        if trimmed.startswith("[") or trimmed.startswith("{"):
            try:
                parsed = json.loads(trimmed)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                categories.extend(v for v in (_metadata_value(item) for item in parsed) if v)
                return
        categories.extend(part.strip() for part in trimmed.split(",") if part.strip())

    add_from_value(metadata.get("categories") or metadata.get("category"))
    add_from_value(product_metadata.get("categories") or product_metadata.get("category"))

    unique = _unique(categories)
    return unique or None


def extract_option_details(metadata: Dict[str, str]) -> Tuple[Optional[str], List[str]]:
    """
    Extrae las opciones seleccionadas de la metadata.

    Las claves optionN_name / optionN_value se emparejan por slot; el resto de
    claves que mencionan option/vehicle/fitment/... se agregan como "Label: valor".

    Returns:
        Tuple: (resumen separado por comas, lista de detalles)
    """
    pairs: Dict[str, Dict[str, str]] = {}
    consumed = set()

    for key, value in metadata.items():
        match = _OPTION_PAIR_RE.match(key.lower())
        if match:
            slot = match.group(1) or ""
            pairs.setdefault(slot, {})[match.group(2)] = value
            consumed.add(key)

    details: List[str] = []
    for slot, pair in pairs.items():
        value = (pair.get("value") or "").strip()
        if not value:
            continue
        label = (pair.get("name") or (humanize(slot) if slot else "")).strip()
        details.append(f"{label}: {value}" if label else value)

    for key, value in metadata.items():
        lower_key = key.lower()
        if key in consumed:
            continue
        if any(ignore in lower_key for ignore in IGNORE_OPTION_KEYS):
            continue
        if not any(keyword in lower_key for keyword in OPTION_KEYWORDS):
            continue
        details.append(f"{humanize(key)}: {value}")

    unique_details = _unique(detail.strip() for detail in details)
    summary = ", ".join(unique_details) if unique_details else None
    return summary, unique_details


def extract_upgrades(metadata: Dict[str, str]) -> Optional[List[str]]:
    """Upgrades declarados en claves upgrade/addon, separados por , ; o |."""
    upgrades: List[str] = []
    for key, value in metadata.items():
        lower_key = key.lower()
        if not any(keyword in lower_key for keyword in UPGRADE_KEYWORDS):
            continue
        tokens = [part.strip() for part in re.split(r"[,;|]", value) if part.strip()]
        upgrades.extend(tokens or [value.strip()])
    unique = _unique(upgrades)
    return unique or None


def _positive_quantity(value: float) -> Optional[float]:
    if value <= 0:
        return None
    return int(value) if float(value).is_integer() else value


def _prune_none(item: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in item.items() if value is not None}


# === STRIPE LINE ITEMS ===


def map_stripe_line_item(
    line_item: Dict[str, Any], session_metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Convierte un line item de Stripe en un item de carrito.

    Args:
        line_item: Line item con price y price.product expandidos
        session_metadata: Metadata de la sesión de checkout

    Returns:
        Dict: Item de carrito sin campos vacíos (sin _type ni _key)
    """
    price_obj = line_item.get("price") if isinstance(line_item.get("price"), dict) else None
    product_obj = None
    if price_obj and isinstance(price_obj.get("product"), dict):
        product_obj = price_obj["product"]

    metadata, entries = _collect_metadata(
        [
            ("lineItem", line_item.get("metadata")),
            ("price", (price_obj or {}).get("metadata")),
            ("product", (product_obj or {}).get("metadata")),
            ("session", session_metadata),
        ]
    )

    sku = _pick_first(
        metadata, ["sku", "SKU", "product_sku", "productSku", "item_sku", "variant_sku", "inventory_sku"]
    )
    product_slug = _pick_first(metadata, ["sanity_slug", "product_slug", "productSlug", "slug", "handle"])
    stripe_product_id = (product_obj or {}).get("id") or _pick_first(
        metadata, ["stripe_product_id", "stripeProductId"]
    )
    raw_price = line_item.get("price")
    stripe_price_id = (
        (raw_price if isinstance(raw_price, str) else (price_obj or {}).get("id"))
        or _pick_first(metadata, ["stripe_price_id", "stripePriceId", "price_id"])
    )
    product_id = (
        _pick_first(
            metadata, ["product_id", "productId", "sanity_product_id", "sanityProductId", "item_id", "itemId"]
        )
        or product_slug
        or stripe_product_id
    )

    quantity = to_number(line_item.get("quantity")) or 0
    unit_amount = (to_number((price_obj or {}).get("unit_amount")) or 0) / 100
    if unit_amount > 0:
        price = unit_amount
    else:
        amount_total = to_number((line_item.get("unit_price") or {}).get("amount_total"))
        price = amount_total / 100 if amount_total is not None else None

    description = to_str(line_item.get("description"))
    product_name = to_str((product_obj or {}).get("name"))
    fallback_name = to_str(metadata.get("line_item_name")) or to_str(metadata.get("item_name")) or to_str(
        metadata.get("name")
    )
    base_name = description or fallback_name or product_name

    option_summary, option_details = extract_option_details(metadata)
    upgrades = extract_upgrades(metadata)

    extra_parts: List[str] = []
    if option_summary and (not base_name or option_summary.lower() not in base_name.lower()):
        extra_parts.append(option_summary)
    if upgrades:
        label = f"Upgrades: {', '.join(upgrades)}"
        if not base_name or label.lower() not in base_name.lower():
            extra_parts.append(label)

    name = " • ".join(part for part in [base_name, *extra_parts] if part) or None

    return _prune_none(
        {
            "id": product_id,
            "productSlug": product_slug,
            "stripeProductId": stripe_product_id,
            "stripePriceId": stripe_price_id,
            "sku": sku,
            "name": name,
            "productName": product_name,
            "description": description,
            "optionSummary": option_summary,
            "optionDetails": option_details or None,
            "upgrades": upgrades,
            "price": price,
            "quantity": _positive_quantity(quantity),
            "categories": _extract_categories(product_obj, metadata),
            "metadata": entries or None,
        }
    )


def build_cart_from_line_items(
    line_items: List[Dict[str, Any]], session_metadata: Optional[Dict[str, Any]] = None
) -> List[Dict[str, Any]]:
    """Construye el carrito de una orden a partir de los line items de Stripe."""
    cart = []
    for line_item in line_items or []:
        mapped = map_stripe_line_item(line_item, session_metadata)
        amount_total = to_number(line_item.get("amount_total"))
        if amount_total is not None:
            mapped["lineTotal"] = amount_total / 100
            mapped["total"] = amount_total / 100
        cart.append({"_type": CART_ITEM_TYPE, "_key": new_key(), **mapped})
    return cart


# === LEGACY MIGRATION ===


def to_order_cart_item(item: Any) -> Optional[Dict[str, Any]]:
    """
    Migra un item legacy al tipo orderCartItem.

    Los items cartLine se convierten; los items sin _type se tipan; cualquier
    otro tipo se descarta.

    Returns:
        El item migrado o None si debe descartarse
    """
    if not isinstance(item, dict):
        return None

    cloned = dict(item)
    if cloned.get("_type") == "cartLine":
        quantity = to_number(cloned.get("quantity") or cloned.get("qty") or 1)
        price = to_number(cloned.get("amount_total") or cloned.get("amount") or cloned.get("total") or 0)
        return _prune_none(
            {
                "_type": CART_ITEM_TYPE,
                "_key": cloned.get("_key") if isinstance(cloned.get("_key"), str) and cloned.get("_key") else new_key(),
                "name": cloned.get("description") or cloned.get("name") or "Line item",
                "sku": cloned.get("sku") or None,
                "quantity": quantity if quantity and quantity > 0 else 1,
                "price": price,
            }
        )

    if not cloned.get("_type"):
        cloned["_type"] = CART_ITEM_TYPE
    if cloned["_type"] != CART_ITEM_TYPE:
        return None
    if not isinstance(cloned.get("_key"), str) or not cloned.get("_key"):
        cloned["_key"] = new_key()
    return cloned


def fix_cart(cart: Any) -> Optional[List[Dict[str, Any]]]:
    """Aplica to_order_cart_item a todo el carrito, descartando items inválidos."""
    if not isinstance(cart, list):
        return None
    return [migrated for migrated in (to_order_cart_item(item) for item in cart) if migrated]


def cart_needs_migration(cart: Any) -> bool:
    """Hay items sin _type o del tipo legacy cartLine."""
    if not isinstance(cart, list):
        return False
    return any(isinstance(item, dict) and item.get("_type") in (None, "", "cartLine") for item in cart)


# === FIELD NORMALIZATION ===


def _parse_amount(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return to_number(value)
    cleaned = re.sub(r"[^0-9.+-]", "", str(value))
    return to_number(cleaned)


def _metadata_entries(item: Dict[str, Any]) -> List[Dict[str, Any]]:
    entries = item.get("metadataEntries")
    if not isinstance(entries, list):
        entries = item.get("metadata") if isinstance(item.get("metadata"), list) else []
    return [entry for entry in entries if isinstance(entry, dict)]


def _split_segments(text: Any) -> List[str]:
    return [segment.strip() for segment in re.split(r"[,;|•]", str(text)) if segment.strip()]


def normalize_cart_item_fields(item: Any, lookup: Optional[ProductLookup] = None) -> Any:
    """
    Completa los campos que el Studio espera en cada item de carrito.

    - optionSummary desde metadata.option_summary
    - metadata.upgrades como lista
    - sku desde el producto enlazado o la metadata
    - productRef desde el slug
    - optionDetails por defecto y reclasificación de "upgrade:" / "add-on:" / "accessory:"
    - quantity por defecto 1, lineTotal y total

    Args:
        item: Item de carrito
        lookup: Índices de productos

    Returns:
        Item normalizado (nuevo dict)
    """
    if not isinstance(item, dict):
        return item

    lookup = lookup or ProductLookup()
    result = dict(item)
    metadata = dict(result["metadata"]) if isinstance(result.get("metadata"), dict) else None

    if not result.get("optionSummary") and metadata and isinstance(metadata.get("option_summary"), str):
        summary = metadata["option_summary"].strip()
        if summary:
            result["optionSummary"] = summary

    if metadata is not None:
        upgrades_value = metadata.get("upgrades")
        if isinstance(upgrades_value, str) and upgrades_value.strip():
            metadata["upgrades"] = [upgrades_value.strip()]
            result["metadata"] = metadata

    if not result.get("sku"):
        product_ref = result.get("productRef") if isinstance(result.get("productRef"), dict) else {}
        slug_or_id = result.get("productSlug") or result.get("id")
        sku = (product_ref.get("_ref") and lookup.sku_by_id.get(product_ref["_ref"])) or (
            slug_or_id and lookup.sku_by_slug_or_id.get(slug_or_id)
        )
        if not sku:
            candidates = list(_metadata_entries(result))
            if metadata:
                candidates.extend(
                    {"key": key, "value": value} for key, value in metadata.items() if isinstance(value, str)
                )
            for entry in candidates:
                value = entry.get("value")
                if entry.get("key") in SKU_METADATA_KEYS and isinstance(value, str) and value.strip():
                    sku = value.strip()
                    break
        if sku:
            result["sku"] = sku

    if not isinstance(result.get("productRef"), dict) or not result["productRef"].get("_ref"):
        slug_or_id = result.get("productSlug") or result.get("id")
        found_id = slug_or_id and lookup.id_by_slug.get(slug_or_id)
        if found_id:
            result["productRef"] = reference(found_id)

    option_details = result.get("optionDetails")
    if (not isinstance(option_details, list) or not option_details) and result.get("optionSummary"):
        summary = str(result["optionSummary"]).strip()
        if summary:
            result["optionDetails"] = [summary]

    if isinstance(result.get("optionDetails"), list) and result["optionDetails"]:
        details: List[str] = []
        reclassified: List[str] = []
        for entry in result["optionDetails"]:
            for segment in _split_segments(entry):
                if _UPGRADE_LABEL_RE.match(segment):
                    value = _UPGRADE_LABEL_RE.sub("", segment).strip()
                    if value:
                        reclassified.append(value)
                else:
                    details.append(segment)
        if reclassified:
            existing = result.get("upgrades") if isinstance(result.get("upgrades"), list) else []
            merged = _unique([*existing, *reclassified])
            if len(merged) != len(existing):
                result["upgrades"] = merged
        normalized_details = _unique(details)
        if normalized_details != result["optionDetails"]:
            result["optionDetails"] = normalized_details

    quantity = to_number(result.get("quantity"))
    result["quantity"] = 1 if quantity is None or quantity <= 0 else int(round(quantity))

    entries = _metadata_entries(result)

    def by_key(name: str) -> Optional[float]:
        for entry in entries:
            if str(entry.get("key") or "").lower() == name:
                return _parse_amount(entry.get("value"))
        return None

    meta_line = _first_not_none(by_key("line_total"), by_key("linetotal"), by_key("amount_total"))
    meta_total = _first_not_none(by_key("item_total"), by_key("total"))

    price = _parse_amount(result.get("price"))
    computed_line = meta_line
    if computed_line is None and price is not None:
        computed_line = max(0.0, price) * max(1, result["quantity"])

    if computed_line is not None and result.get("lineTotal") is None:
        result["lineTotal"] = computed_line

    resolved_line = to_number(result.get("lineTotal"))
    if resolved_line is None:
        resolved_line = computed_line
    resolved_total = meta_total if meta_total is not None else resolved_line
    if resolved_total is not None and result.get("total") is None:
        result["total"] = resolved_total

    return result


def _first_not_none(*values: Optional[float]) -> Optional[float]:
    for value in values:
        if value is not None:
            return value
    return None


def build_product_lookup(products_by_id: List[Dict[str, Any]], products_by_slug: List[Dict[str, Any]]) -> ProductLookup:
    """
    Arma los índices a partir de las dos consultas de productos (por _id y por slug).
    """
    lookup = ProductLookup()
    for product in products_by_id or []:
        if not product or not product.get("_id"):
            continue
        if product.get("sku"):
            lookup.sku_by_id[product["_id"]] = product["sku"]
        slug = (product.get("slug") or {}).get("current")
        if slug:
            lookup.id_by_slug[slug] = product["_id"]
    for product in products_by_slug or []:
        if not product or not product.get("key"):
            continue
        if product.get("sku"):
            lookup.sku_by_slug_or_id[product["key"]] = product["sku"]
        if product.get("_id"):
            lookup.id_by_slug[product["key"]] = product["_id"]
    return lookup


# === PRODUCT MATCHING ===


def collect_product_lookup_keys(cart: List[Any]) -> Dict[str, List[str]]:
    """
    Claves de búsqueda de productos para un carrito.

    Returns:
        Dict con slugs, skus, titles, ids, priceIds y productIds
    """
    keys: Dict[str, List[str]] = {
        "slugs": [],
        "skus": [],
        "titles": [],
        "ids": [],
        "priceIds": [],
        "productIds": [],
    }

    def add(bucket: str, value: Optional[str]):
        if value and value not in keys[bucket]:
            keys[bucket].append(value)

    for item in cart or []:
        if not isinstance(item, dict):
            continue
        for slug in (item.get("productSlug"), slugify(item.get("productName")), slugify(item.get("name"))):
            add("slugs", slug)
        add("skus", to_str(item.get("sku")))
        add("priceIds", to_str(item.get("stripePriceId")))
        add("productIds", to_str(item.get("stripeProductId")))
        add("titles", to_str(item.get("productName")))
        add("titles", to_str(item.get("name")))
        if looks_like_cms_id(item.get("id")):
            add("ids", item["id"])
    return keys


def has_lookup_keys(keys: Dict[str, List[str]]) -> bool:
    return any(keys.values())


def _lower(value: Any) -> str:
    return str(value or "").strip().lower()


def find_product_for_item(item: Dict[str, Any], products: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Busca el producto de un item por sku, price id, product id de Stripe,
    slug, _id y finalmente título.
    """
    if not products:
        return None

    sku = _lower(item.get("sku"))
    if sku:
        for product in products:
            if _lower(product.get("sku")) == sku:
                return product

    price_id = _lower(item.get("stripePriceId"))
    if price_id:
        for product in products:
            if _lower(product.get("stripePriceId")) == price_id:
                return product
        for product in products:
            if any(_lower((snap or {}).get("priceId")) == price_id for snap in product.get("stripePrices") or []):
                return product

    stripe_product_id = _lower(item.get("stripeProductId"))
    if stripe_product_id:
        for product in products:
            if _lower(product.get("stripeProductId")) == stripe_product_id:
                return product

    slug_candidates = [
        slug
        for slug in (to_str(item.get("productSlug")), slugify(item.get("productName")), slugify(item.get("name")))
        if slug
    ]
    for slug in slug_candidates:
        for product in products:
            if _lower((product.get("slug") or {}).get("current")) == slug.lower():
                return product

    item_id = item.get("id")
    if looks_like_cms_id(item_id):
        for product in products:
            if product.get("_id") == item_id:
                return product

    for title in (to_str(item.get("productName")), to_str(item.get("name"))):
        if not title:
            continue
        for product in products:
            if _lower(product.get("title")) == title.lower():
                return product

    return None


# === CLEANING ===


def derive_selected_variant(option_details: Any) -> Optional[str]:
    """Primera opción que no es upgrade, sin su etiqueta."""
    if not isinstance(option_details, list):
        return None
    for option in option_details:
        if isinstance(option, str) and "upgrade" not in option.lower():
            parts = option.split(":")
            return (parts[-1] if len(parts) > 1 else option).strip() or None
    return None


def normalize_add_on_label(value: Any) -> Optional[str]:
    """'Upgrade: Option 2: Chrome Tips' -> 'Chrome Tips'."""
    if not isinstance(value, str):
        return None
    label = value.strip()
    if not label:
        return None
    if ":" in label:
        parts = [part.strip() for part in label.split(":") if part.strip()]
        if len(parts) > 1:
            label = parts[-1]
    label = _OPTION_PREFIX_RE.sub("", label).strip()
    label = _ADDON_PREFIX_RE.sub("", label).strip()
    return label or None


def derive_add_ons(item: Dict[str, Any]) -> Optional[List[str]]:
    raw = item.get("addOns") if isinstance(item.get("addOns"), list) else []
    upgrades = item.get("upgrades") if isinstance(item.get("upgrades"), list) else []
    option_upgrades = [
        option
        for option in (item.get("optionDetails") if isinstance(item.get("optionDetails"), list) else [])
        if isinstance(option, str) and "upgrade" in option.lower()
    ]
    cleaned = [
        normalize_add_on_label(_UPGRADE_PREFIX_RE.sub("", value.strip()))
        for value in [*raw, *upgrades, *option_upgrades]
        if isinstance(value, str)
    ]
    unique = _unique(label for label in cleaned if label)
    return unique or None


def clean_cart_item(item: Dict[str, Any], products: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Limpia un item de carrito contra el catálogo de productos.

    Enlaza productRef/productSlug/sku desde el producto encontrado, reconcilia
    precio, cantidad, lineTotal, total y upgradesTotal, y deriva
    selectedVariant y addOns.

    Args:
        item: Item de carrito
        products: Productos candidatos para el carrito

    Returns:
        Dict: Item limpio
    """
    result = dict(item)
    result["_type"] = CART_ITEM_TYPE
    if not isinstance(result.get("_key"), str) or not result.get("_key"):
        result["_key"] = new_key()

    product = find_product_for_item(result, products)
    if product and product.get("_id"):
        result["productRef"] = reference(product["_id"])
        slug = (product.get("slug") or {}).get("current")
        if not result.get("productSlug") and slug:
            result["productSlug"] = slug
    if product and product.get("sku"):
        result["sku"] = product["sku"]

    quantity = result.get("quantity")
    if isinstance(quantity, (int, float)) and not isinstance(quantity, bool) and quantity > 0:
        quantity = int(round(quantity))
    else:
        quantity = 1
    result["quantity"] = quantity

    def finite(value: Any) -> Optional[float]:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return to_number(value)

    unit_price = finite(result.get("price"))
    if unit_price is None:
        total = finite(result.get("total"))
        line_total = finite(result.get("lineTotal"))
        if total is not None:
            unit_price = total / quantity
        elif line_total is not None:
            unit_price = line_total / quantity
        else:
            unit_price = 0
    result["price"] = unit_price

    existing_upgrades_total = finite(result.get("upgradesTotal"))
    line_candidate = _first_not_none(finite(result.get("total")), finite(result.get("lineTotal")))
    computed_line = unit_price * quantity if unit_price else 0
    resolved_line = line_candidate if line_candidate is not None else computed_line
    derived_upgrades = (
        existing_upgrades_total if existing_upgrades_total is not None else max(0, resolved_line - computed_line)
    )

    if derived_upgrades:
        result["upgradesTotal"] = derived_upgrades
    else:
        result.pop("upgradesTotal", None)
    result["lineTotal"] = resolved_line or computed_line + (derived_upgrades or 0)
    result["total"] = result["lineTotal"]

    selected_variant = result.get("selectedVariant") or derive_selected_variant(result.get("optionDetails"))
    if selected_variant:
        result["selectedVariant"] = selected_variant
    add_ons = derive_add_ons(result)
    if add_ons:
        result["addOns"] = add_ons

    return result
