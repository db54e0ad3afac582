"""Tests unitarios para mapeo y normalización de items de carrito."""

from app.services.cart_items import (
    CART_ITEM_TYPE,
    ProductLookup,
    build_cart_from_line_items,
    cart_needs_migration,
    clean_cart_item,
    collect_product_lookup_keys,
    derive_selected_variant,
    extract_option_details,
    extract_upgrades,
    find_product_for_item,
    fix_cart,
    map_stripe_line_item,
    normalize_add_on_label,
    normalize_cart_item_fields,
    to_order_cart_item,
)

PRODUCTS = [
    {"_id": "product-1", "sku": "BK-1", "slug": {"current": "brake-kit"}, "title": "Brake Kit"},
    {"_id": "product-2", "sku": "EX-9", "slug": {"current": "exhaust"}, "title": "Exhaust", "stripePriceId": "price_9"},
]


class TestStripeLineItems:
    """Tests para convertir line items de Stripe en items de carrito."""

    def _line_item(self):
        return {
            "description": "Brake kit",
            "quantity": 2,
            "amount_total": 25000,
            "metadata": {"option1_name": "Color", "option1_value": "Red"},
            "price": {
                "id": "price_1",
                "unit_amount": 12500,
                "product": {"id": "prod_1", "name": "Brake kit", "metadata": {"sku": "BK-1"}},
            },
        }

    def test_map_line_item_fields(self):
        """Debe tomar sku, precio, cantidad y opciones de la metadata."""
        mapped = map_stripe_line_item(self._line_item())

        assert mapped["sku"] == "BK-1"
        assert mapped["stripePriceId"] == "price_1"
        assert mapped["stripeProductId"] == "prod_1"
        assert mapped["price"] == 125.0
        assert mapped["quantity"] == 2
        assert mapped["optionSummary"] == "Color: Red"
        assert mapped["name"] == "Brake kit • Color: Red"

    def test_map_line_item_drops_empty_fields(self):
        """Debe omitir los campos sin valor."""
        mapped = map_stripe_line_item({"description": "Gift card", "quantity": 1})

        assert "sku" not in mapped
        assert "upgrades" not in mapped
        assert mapped["name"] == "Gift card"

    def test_build_cart_adds_type_key_and_totals(self):
        """Debe agregar _type, _key y lineTotal desde amount_total."""
        cart = build_cart_from_line_items([self._line_item()])

        assert len(cart) == 1
        assert cart[0]["_type"] == CART_ITEM_TYPE
        assert cart[0]["_key"]
        assert cart[0]["lineTotal"] == 250.0
        assert cart[0]["total"] == 250.0

    def test_extract_option_details_ignores_shipping_options(self):
        summary, details = extract_option_details({"vehicle_model": "Mustang", "shipping_option": "ground"})

        assert details == ["Vehicle Model: Mustang"]
        assert summary == "Vehicle Model: Mustang"

    def test_extract_upgrades_splits_values(self):
        assert extract_upgrades({"upgrades": "Chrome tips; Ceramic coat", "color": "red"}) == [
            "Chrome tips",
            "Ceramic coat",
        ]
        assert extract_upgrades({"color": "red"}) is None


class TestLegacyCartMigration:
    """Tests para migrar items legacy a orderCartItem."""

    def test_cart_line_is_converted(self):
        """Debe convertir cartLine conservando el _key."""
        item = to_order_cart_item(
            {"_type": "cartLine", "_key": "k1", "description": "Brake kit", "quantity": 2, "amount_total": 150}
        )

        assert item == {"_type": CART_ITEM_TYPE, "_key": "k1", "name": "Brake kit", "quantity": 2, "price": 150}

    def test_untyped_item_gets_type_and_key(self):
        item = to_order_cart_item({"name": "Exhaust"})

        assert item["_type"] == CART_ITEM_TYPE
        assert item["_key"]

    def test_other_types_are_dropped(self):
        """Debe descartar items de otros tipos."""
        assert fix_cart([{"_type": "product"}, "garbage", {"_type": CART_ITEM_TYPE, "_key": "a"}]) == [
            {"_type": CART_ITEM_TYPE, "_key": "a"}
        ]
        assert fix_cart(None) is None

    def test_cart_needs_migration(self):
        assert cart_needs_migration([{"_type": "cartLine"}])
        assert cart_needs_migration([{"name": "no type"}])
        assert not cart_needs_migration([{"_type": CART_ITEM_TYPE}])
        assert not cart_needs_migration("not a cart")

    def test_fix_cart_is_idempotent(self):
        """Aplicar la migración sobre su salida no debe cambiar nada."""
        once = fix_cart([{"_type": "cartLine", "_key": "k1", "name": "A"}, {"_key": "k2", "name": "B"}])

        assert fix_cart(once) == once


class TestNormalizeCartItemFields:
    """Tests para normalize_cart_item_fields."""

    def test_quantity_and_totals(self):
        """Debe calcular lineTotal y total desde precio y cantidad."""
        result = normalize_cart_item_fields({"_key": "a", "name": "X", "price": 10, "quantity": 2})

        assert result["quantity"] == 2
        assert result["lineTotal"] == 20.0
        assert result["total"] == 20.0

    def test_missing_quantity_defaults_to_one(self):
        assert normalize_cart_item_fields({"name": "X"})["quantity"] == 1

    def test_sku_from_metadata_entries(self):
        """Debe leer el sku de las entradas de metadata."""
        result = normalize_cart_item_fields({"metadata": [{"key": "sku", "value": " ABC "}]})

        assert result["sku"] == "ABC"

    def test_sku_and_product_ref_from_lookup(self):
        lookup = ProductLookup(sku_by_slug_or_id={"brake-kit": "BK-1"}, id_by_slug={"brake-kit": "product-1"})

        result = normalize_cart_item_fields({"productSlug": "brake-kit"}, lookup)

        assert result["sku"] == "BK-1"
        assert result["productRef"] == {"_type": "reference", "_ref": "product-1"}

    def test_upgrade_segments_move_to_upgrades(self):
        """Debe mover 'Upgrade: ...' de optionDetails a upgrades."""
        result = normalize_cart_item_fields({"optionDetails": ["Color: Red, Upgrade: Chrome tips"]})

        assert result["optionDetails"] == ["Color: Red"]
        assert result["upgrades"] == ["Chrome tips"]

    def test_option_summary_from_metadata(self):
        result = normalize_cart_item_fields({"metadata": {"option_summary": " Red ", "upgrades": "Tint"}})

        assert result["optionSummary"] == "Red"
        assert result["optionDetails"] == ["Red"]
        assert result["metadata"]["upgrades"] == ["Tint"]

    def test_normalization_is_idempotent(self):
        """Normalizar la salida de la normalización no produce cambios."""
        item = {
            "_key": "a",
            "productSlug": "brake-kit",
            "price": "12.50",
            "quantity": "3",
            "optionDetails": ["Color: Red; Upgrade: Chrome tips"],
        }
        lookup = ProductLookup(sku_by_slug_or_id={"brake-kit": "BK-1"}, id_by_slug={"brake-kit": "product-1"})

        once = normalize_cart_item_fields(item, lookup)

        assert normalize_cart_item_fields(once, lookup) == once

    def test_original_item_is_not_mutated(self):
        item = {"name": "X", "quantity": 0}

        normalize_cart_item_fields(item)

        assert item == {"name": "X", "quantity": 0}


class TestProductMatching:
    """Tests para encontrar productos de un item."""

    def test_match_by_sku_case_insensitive(self):
        assert find_product_for_item({"sku": "bk-1"}, PRODUCTS)["_id"] == "product-1"

    def test_match_by_price_id(self):
        assert find_product_for_item({"stripePriceId": "price_9"}, PRODUCTS)["_id"] == "product-2"

    def test_match_by_slugified_name(self):
        """Debe usar el slug del nombre cuando no hay sku."""
        assert find_product_for_item({"name": "Exhaust"}, PRODUCTS)["_id"] == "product-2"

    def test_no_match(self):
        assert find_product_for_item({"name": "Unknown"}, PRODUCTS) is None
        assert find_product_for_item({"sku": "BK-1"}, []) is None

    def test_collect_lookup_keys(self):
        keys = collect_product_lookup_keys([{"name": "Brake Kit", "sku": "BK-1", "id": "product-1"}, "bad"])

        assert keys["slugs"] == ["brake-kit"]
        assert keys["skus"] == ["BK-1"]
        assert keys["titles"] == ["Brake Kit"]
        assert keys["ids"] == ["product-1"]


class TestCleanCartItem:
    """Tests para clean_cart_item."""

    def _item(self):
        return {
            "_key": "k",
            "name": "Brake Kit",
            "sku": "bk-1",
            "price": 100,
            "quantity": 2,
            "total": 230,
            "optionDetails": ["Color: Red", "Upgrade: Chrome Tips"],
        }

    def test_links_product_and_reconciles_totals(self):
        """Debe enlazar el producto y derivar upgradesTotal de la diferencia."""
        result = clean_cart_item(self._item(), PRODUCTS)

        assert result["productRef"] == {"_type": "reference", "_ref": "product-1"}
        assert result["productSlug"] == "brake-kit"
        assert result["sku"] == "BK-1"
        assert result["upgradesTotal"] == 30
        assert result["lineTotal"] == 230
        assert result["total"] == 230
        assert result["selectedVariant"] == "Red"
        assert result["addOns"] == ["Chrome Tips"]

    def test_price_from_total_when_missing(self):
        result = clean_cart_item({"_key": "k", "quantity": 4, "total": 80}, [])

        assert result["price"] == 20
        assert result["lineTotal"] == 80
        assert "upgradesTotal" not in result

    def test_clean_is_idempotent(self):
        """Limpiar un item ya limpio no produce cambios."""
        once = clean_cart_item(self._item(), PRODUCTS)

        assert clean_cart_item(once, PRODUCTS) == once

    def test_label_helpers(self):
        assert normalize_add_on_label("Upgrade: Option 2: Chrome Tips") == "Chrome Tips"
        assert normalize_add_on_label("   ") is None
        assert derive_selected_variant(["Upgrade: Tint", "Size: XL"]) == "XL"
        assert derive_selected_variant(None) is None
