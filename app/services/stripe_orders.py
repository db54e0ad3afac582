"""
Sincronización de órdenes e invoices con Stripe.

Este módulo concentra la lógica que convierte objetos de Stripe (checkout
sessions, payment intents, charges y refunds) en documentos de Sanity:

- Creación/actualización de órdenes desde una checkout session
- Actualización de estado de pago en orden e invoice vinculada
- Diagnóstico de fallos de pago
- Checkouts expirados y carritos abandonados
- Reembolsos y pagos asíncronos

Lo usan el webhook de Stripe, el endpoint de reproceso y los backfills.
"""

import logging
import random
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from app.db.sanity_client import SanityClient, get_sanity_client
from app.db.stripe_client import StripeGateway, get_stripe_gateway
from app.services.cart_items import build_cart_from_line_items
from app.services.stripe_summary import build_stripe_summary, prune
from app.utils.error_handler import ExternalAPIException, NotFoundException, ValidationException
from app.utils.id_utils import (
    candidate_from_session_id,
    id_variants,
    new_key,
    normalize_id,
    now_iso,
    reference,
    safe_json_dumps,
    sanitize_order_number,
    slugify,
    to_int,
    to_number,
    to_str,
    unix_to_iso,
)

logger = logging.getLogger(__name__)

PAID_STATUSES = ("paid", "succeeded", "complete", "no_payment_required")
CANCELLED_STATUSES = ("canceled", "cancelled")
FAILED_CHECKOUT_PAYMENT_STATUSES = (
    "failed",
    "unpaid",
    "requires_payment_method",
    "requires_action",
    "requires_customer_action",
    "requires_source",
    "requires_source_action",
    "requires_confirmation",
)
NON_FAILURE_INTENT_STATUSES = ("succeeded", "processing", "requires_capture")

ORDER_NUMBER_RANDOM_ATTEMPTS = 8

_RATE_NAME_SPLIT_RE = re.compile(r"\s*[–—-]\s*")


# === HELPERS ===


def normalize_metadata(metadata: Any) -> Dict[str, str]:
    """Metadata de Stripe como dict de strings sin valores vacíos."""
    output: Dict[str, str] = {}
    if not isinstance(metadata, dict):
        return output
    for key, value in metadata.items():
        text = to_str(value)
        if key and text:
            output[str(key)] = text
    return output


def _first(mapping: Dict[str, Any], keys: List[str]) -> Optional[str]:
    for key in keys:
        value = to_str(mapping.get(key))
        if value:
            return value
    return None


def _cents(value: Any) -> Optional[float]:
    number = to_number(value)
    return number / 100 if number is not None else None


def _object_id(value: Any) -> Optional[str]:
    """Id de un campo de Stripe que puede venir expandido o como string."""
    if isinstance(value, dict):
        return to_str(value.get("id"))
    return to_str(value)


def normalize_payment_status(raw_status: Any, session_status: Any = None) -> str:
    """
    Normaliza el estado de pago de una sesión o payment intent.

    Returns:
        str: paid, expired, cancelled, failed, pending o el estado original
    """
    status = (to_str(raw_status) or "").lower()
    if status in PAID_STATUSES:
        return "paid"
    if (to_str(session_status) or "").lower() == "expired":
        return "expired"
    if status in CANCELLED_STATUSES:
        return "cancelled"
    if status in FAILED_CHECKOUT_PAYMENT_STATUSES:
        return "failed"
    return status or "pending"


def derive_order_status(payment_status: str, session_status: Any = None) -> str:
    """Estado de la orden a partir del estado de pago normalizado."""
    if (to_str(session_status) or "").lower() == "expired":
        return "expired"
    if payment_status in ("cancelled", "failed"):
        return "cancelled"
    return "paid"


def create_order_slug(order_number: Optional[str], fallback_id: Optional[str] = None) -> Optional[str]:
    """Slug de la orden: número de orden o, en su defecto, el id de sesión."""
    return slugify(order_number) or slugify(fallback_id)


# === NÚMERO DE ORDEN ===


async def _order_number_in_use(sanity: SanityClient, number: str) -> bool:
    query = (
        'count(*[_type == "order" && orderNumber == $num]) + '
        'count(*[_type == "invoice" && (orderNumber == $num || invoiceNumber == $num)])'
    )
    count = await sanity.fetch(query, {"num": number})
    return bool(to_int(count))


async def resolve_order_number(
    metadata_order_number: Any = None,
    invoice_number: Any = None,
    fallback_id: Any = None,
    sanity: Optional[SanityClient] = None,
) -> str:
    """
    Resuelve un número de orden único con formato FAS-XXXXXX.

    Se prueban en orden: número en metadata, número de invoice, dígitos del
    id de sesión, números aleatorios y finalmente uno derivado del reloj.

    Args:
        metadata_order_number: order_number de la metadata de Stripe
        invoice_number: Número de invoice de Sanity
        fallback_id: Id de la checkout session

    Returns:
        str: Número de orden no usado por otra orden o invoice
    """
    sanity = sanity or get_sanity_client()
    candidates = [
        sanitize_order_number(metadata_order_number),
        sanitize_order_number(invoice_number),
        candidate_from_session_id(fallback_id),
    ]
    for candidate in candidates:
        if candidate and not await _order_number_in_use(sanity, candidate):
            return candidate

    for _ in range(ORDER_NUMBER_RANDOM_ATTEMPTS):
        candidate = f"FAS-{random.randint(0, 999999):06d}"
        if not await _order_number_in_use(sanity, candidate):
            return candidate

    return f"FAS-{int(time.time() * 1000) % 1_000_000:06d}"


# === SHIPPING ===


async def resolve_shipping_details(
    session: Optional[Dict[str, Any]] = None,
    gateway: Optional[StripeGateway] = None,
    metadata: Optional[Dict[str, Any]] = None,
    payment_intent: Optional[Dict[str, Any]] = None,
    fallback_amount: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Resuelve el envío seleccionado en el checkout.

    Combina, por prioridad: metadata de la sesión, shipping_cost de la sesión,
    el shipping rate de Stripe (display_name, fixed_amount, delivery_estimate)
    y la metadata del rate.

    Args:
        session: Checkout session
        gateway: Gateway de Stripe para recuperar el shipping rate
        metadata: Metadata ya normalizada (por defecto la de la sesión)
        payment_intent: Payment intent (fallbacks de carrier y moneda)
        fallback_amount: Monto a usar si no hay otro disponible

    Returns:
        Dict: amount, currency, carrier, carrierId, serviceName, serviceCode,
        deliveryDays, estimatedDeliveryDate, shippingRateId y metadata
    """
    session = session or {}
    pi = payment_intent or {}
    meta = normalize_metadata(metadata if metadata is not None else session.get("metadata"))
    shipping_cost = session.get("shipping_cost") or {}
    shipping_details = session.get("shipping_details") or {}

    amount = to_number(_first(meta, ["shipping_amount", "shippingAmount"]))
    if amount is None:
        amount = _cents(shipping_cost.get("amount_total"))
    if amount is None:
        amount = _cents((session.get("total_details") or {}).get("amount_shipping"))
    if amount is None:
        amount = fallback_amount

    currency = _first(meta, ["shipping_currency", "shippingCurrency"]) or to_str(
        shipping_cost.get("currency") or session.get("currency") or pi.get("currency")
    )
    carrier = (
        _first(meta, ["shipping_carrier", "shippingCarrier"])
        or to_str(shipping_details.get("carrier"))
        or to_str(shipping_details.get("name"))
        or to_str((pi.get("shipping") or {}).get("carrier"))
    )
    carrier_id = _first(meta, ["shipping_carrier_id", "shippingCarrierId", "shipping_carrier_code"])
    service_name = _first(meta, ["shipping_service_name", "shippingServiceName", "shipping_service"])
    service_code = _first(meta, ["shipping_service_code", "shippingServiceCode"])
    rate_id = _first(meta, ["shipping_rate_id", "shippingRateId", "shipengine_rate_id"])
    delivery_days = to_int(_first(meta, ["shipping_delivery_days", "shippingDeliveryDays"]))
    estimated_delivery = _first(meta, ["shipping_estimated_delivery_date", "shippingEstimatedDeliveryDate"])

    shipping_rate_id = _object_id(shipping_cost.get("shipping_rate")) or _object_id(session.get("shipping_rate"))
    rate: Dict[str, Any] = {}
    if isinstance(shipping_cost.get("shipping_rate"), dict):
        rate = shipping_cost["shipping_rate"]
    elif shipping_rate_id and gateway is not None:
        try:
            rate = await gateway.retrieve_shipping_rate(shipping_rate_id) or {}
        except ExternalAPIException as e:
            logger.warning(f"⚠️ Could not retrieve shipping rate {shipping_rate_id}: {e}")

    rate_metadata = normalize_metadata(rate.get("metadata"))
    if rate:
        carrier_id = carrier_id or to_str(rate.get("id"))
        fixed_amount = rate.get("fixed_amount") or {}
        if amount is None:
            amount = _cents(fixed_amount.get("amount"))
        currency = currency or to_str(fixed_amount.get("currency"))

        display_name = to_str(rate.get("display_name"))
        if display_name:
            parts = [part for part in _RATE_NAME_SPLIT_RE.split(display_name, maxsplit=1) if part]
            if len(parts) == 2:
                carrier = carrier or parts[0]
                service_name = service_name or parts[1]
            else:
                service_name = service_name or display_name
        service_code = service_code or to_str(rate.get("id"))

        carrier = carrier or _first(rate_metadata, ["shipping_carrier", "shipengine_carrier", "carrier"])
        carrier_id = carrier_id or _first(rate_metadata, ["shipping_carrier_id", "shipengine_carrier_id"])
        service_name = service_name or _first(rate_metadata, ["shipping_service_name", "shipengine_service_name"])
        service_code = service_code or _first(rate_metadata, ["shipping_service_code", "shipengine_service_code"])
        rate_id = rate_id or _first(rate_metadata, ["shipping_rate_id", "shipengine_rate_id"])
        if delivery_days is None:
            delivery_days = to_int(_first(rate_metadata, ["shipping_delivery_days", "shipengine_delivery_days"]))

        if delivery_days is None:
            estimate = rate.get("delivery_estimate") or {}
            delivery_days = to_int((estimate.get("maximum") or {}).get("value")) or to_int(
                (estimate.get("minimum") or {}).get("value")
            )

    if delivery_days is not None and not estimated_delivery:
        estimated_delivery = (datetime.now(timezone.utc) + timedelta(days=delivery_days)).date().isoformat()

    service_name = service_name or service_code
    if not service_code and service_name:
        service_code = rate_id or shipping_rate_id

    details_metadata = {
        key: value
        for key, value in {
            "shipping_amount": f"{amount:.2f}" if amount is not None else None,
            "shipping_currency": currency.upper() if currency else None,
            "shipping_carrier": carrier,
            "shipping_carrier_id": carrier_id,
            "shipping_service_name": service_name,
            "shipping_service_code": service_code,
            "shipping_delivery_days": str(delivery_days) if delivery_days is not None else None,
            "shipping_estimated_delivery_date": estimated_delivery,
            "shipping_rate_id": rate_id or shipping_rate_id,
        }.items()
        if value
    }
    for key, value in rate_metadata.items():
        details_metadata.setdefault(key, value)

    return {
        "amount": amount,
        "currency": currency.upper() if currency else None,
        "carrier": carrier,
        "carrierId": carrier_id,
        "serviceName": service_name,
        "serviceCode": service_code,
        "deliveryDays": delivery_days,
        "estimatedDeliveryDate": estimated_delivery,
        "shippingRateId": rate_id or shipping_rate_id,
        "metadata": details_metadata,
    }


def _shipping_fields(details: Dict[str, Any], fallback_amount: Optional[float], currency: Optional[str]) -> Dict[str, Any]:
    """Campos de envío del documento de orden."""
    fields: Dict[str, Any] = {}
    amount = details.get("amount") if details.get("amount") is not None else fallback_amount
    shipping_currency = details.get("currency") or (currency.upper() if currency else None)

    if details.get("carrier"):
        fields["shippingCarrier"] = details["carrier"]
    if details.get("serviceName") or details.get("serviceCode") or amount is not None:
        fields["selectedService"] = prune(
            {
                "carrierId": details.get("carrierId"),
                "carrier": details.get("carrier"),
                "service": details.get("serviceName") or details.get("serviceCode"),
                "serviceCode": details.get("serviceCode") or details.get("serviceName"),
                "amount": amount,
                "currency": shipping_currency or "USD",
                "deliveryDays": details.get("deliveryDays"),
                "estimatedDeliveryDate": details.get("estimatedDeliveryDate"),
            }
        )
    if amount is not None:
        fields["amountShipping"] = amount
        fields["selectedShippingAmount"] = amount
    if shipping_currency:
        fields["selectedShippingCurrency"] = shipping_currency
    if details.get("deliveryDays") is not None:
        fields["shippingDeliveryDays"] = details["deliveryDays"]
    if details.get("estimatedDeliveryDate"):
        fields["shippingEstimatedDeliveryDate"] = details["estimatedDeliveryDate"]
    if details.get("serviceCode"):
        fields["shippingServiceCode"] = details["serviceCode"]
    if details.get("serviceName"):
        fields["shippingServiceName"] = details["serviceName"]
    if details.get("metadata"):
        fields["shippingMetadata"] = details["metadata"]
    return fields


# === EVENTOS DE ORDEN ===


def build_event_record(
    event_type: str,
    status: Optional[str] = None,
    label: Optional[str] = None,
    message: Optional[str] = None,
    amount: Optional[float] = None,
    currency: Optional[str] = None,
    stripe_event_id: Optional[str] = None,
    occurred_at: Any = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Registro de evento para orderEvents y events de expiredCart."""
    created_at = unix_to_iso(occurred_at) if occurred_at is not None and to_number(occurred_at) is not None else None
    return prune(
        {
            "_type": "orderEvent",
            "_key": new_key(),
            "type": event_type,
            "createdAt": created_at or to_str(occurred_at) or now_iso(),
            "status": status,
            "label": label,
            "message": message,
            "amount": amount,
            "currency": currency.upper() if currency else None,
            "stripeEventId": stripe_event_id,
            "metadata": safe_json_dumps(metadata) if metadata else None,
        }
    )


async def append_order_event(order_id: str, event_type: str, sanity: Optional[SanityClient] = None, **event) -> bool:
    """
    Agrega un evento al historial orderEvents de una orden.

    Un fallo se registra como warning y no interrumpe el flujo del llamador.

    Args:
        order_id: Id de la orden
        event_type: Tipo de evento (p. ej. checkout.session.completed)
        **event: status, label, message, amount, currency, stripe_event_id,
            occurred_at, metadata

    Returns:
        bool: True si el evento se guardó
    """
    if not order_id:
        return False
    sanity = sanity or get_sanity_client()
    record = build_event_record(event_type, **event)
    try:
        await sanity.patch(order_id).set_if_missing({"orderEvents": []}).append("orderEvents", [record]).commit()
        return True
    except ExternalAPIException as e:
        logger.warning(f"⚠️ Failed to append order event {event_type} to {order_id}: {e}")
        return False


# === ORDEN DESDE CHECKOUT SESSION ===


def _resolve_email(metadata: Dict[str, str], session: Dict[str, Any], pi: Dict[str, Any]) -> Optional[str]:
    charge = ((pi.get("charges") or {}).get("data") or [{}])[0] or {}
    return (
        _first(metadata, ["customer_email", "customerEmail", "email", "customer_email_address"])
        or to_str((session.get("customer_details") or {}).get("email"))
        or to_str(session.get("customer_email"))
        or to_str(pi.get("receipt_email"))
        or to_str((charge.get("billing_details") or {}).get("email"))
    )


def _shipping_address(session: Dict[str, Any], email: Optional[str]) -> Optional[Dict[str, Any]]:
    customer_details = session.get("customer_details") or {}
    shipping_details = session.get("shipping_details") or {}
    address = shipping_details.get("address") or customer_details.get("address")
    if not address:
        return None
    return prune(
        {
            "name": customer_details.get("name") or shipping_details.get("name"),
            "phone": customer_details.get("phone") or shipping_details.get("phone"),
            "email": email,
            "addressLine1": address.get("line1"),
            "addressLine2": address.get("line2"),
            "city": address.get("city"),
            "state": address.get("state"),
            "postalCode": address.get("postal_code"),
            "country": address.get("country"),
        }
    ) or None


def _charge_fields(pi: Dict[str, Any]) -> Dict[str, Any]:
    charge = ((pi.get("charges") or {}).get("data") or [None])[0]
    if not charge and isinstance(pi.get("latest_charge"), dict):
        charge = pi["latest_charge"]
    if not charge:
        return {}
    card = (charge.get("payment_method_details") or {}).get("card") or {}
    return prune(
        {
            "chargeId": charge.get("id"),
            "cardBrand": card.get("brand"),
            "cardLast4": card.get("last4"),
            "receiptUrl": charge.get("receipt_url"),
            "_billingName": (charge.get("billing_details") or {}).get("name"),
        }
    )


async def upsert_order_from_session(
    session: Dict[str, Any],
    payment_intent: Optional[Dict[str, Any]] = None,
    line_items: Optional[List[Dict[str, Any]]] = None,
    event_type: str = "manual.reprocess",
    event_created: Optional[int] = None,
    sanity: Optional[SanityClient] = None,
    gateway: Optional[StripeGateway] = None,
) -> Dict[str, Any]:
    """
    Crea o actualiza la orden de Sanity correspondiente a una checkout session.

    La orden se identifica por stripeSessionId, por lo que reprocesar la misma
    sesión actualiza el documento existente en lugar de duplicarlo.

    Args:
        session: Checkout session de Stripe
        payment_intent: Payment intent asociado (opcional)
        line_items: Line items con price.product expandido
        event_type: Evento que origina la actualización (para stripeSummary)
        event_created: Timestamp Unix del evento

    Returns:
        Dict: orderId, invoiceId, paymentStatus, orderNumber, created,
        customerEmail, customerName, cart y totales
    """
    sanity = sanity or get_sanity_client()
    session_id = to_str(session.get("id"))
    if not session_id:
        raise ValidationException("Checkout session id is required", field="id")

    pi = payment_intent or {}
    metadata = normalize_metadata(session.get("metadata"))
    session_status = (to_str(session.get("status")) or "").lower()
    payment_status = normalize_payment_status(session.get("payment_status") or pi.get("status"), session_status)
    order_status = derive_order_status(payment_status, session_status)

    email = _resolve_email(metadata, session, pi)
    currency = (to_str(session.get("currency") or pi.get("currency")) or "").lower() or None
    total_amount = _cents(session.get("amount_total"))
    if total_amount is None:
        total_amount = _cents(pi.get("amount_received"))
    amount_subtotal = _cents(session.get("amount_subtotal"))
    amount_tax = _cents((session.get("total_details") or {}).get("amount_tax"))
    amount_shipping = _cents((session.get("shipping_cost") or {}).get("amount_total"))
    if amount_shipping is None:
        amount_shipping = _cents((session.get("total_details") or {}).get("amount_shipping"))

    shipping = await resolve_shipping_details(
        session, gateway=gateway, metadata=metadata, payment_intent=pi, fallback_amount=amount_shipping
    )
    if shipping.get("amount") is not None:
        amount_shipping = shipping["amount"]

    existing = await sanity.fetch(
        '*[_type == "order" && stripeSessionId == $sid][0]{_id, orderNumber, packingSlipUrl}',
        {"sid": session_id},
    )
    existing_id = (existing or {}).get("_id")

    order_number = (existing or {}).get("orderNumber") or await resolve_order_number(
        _first(metadata, ["order_number", "orderNo", "website_order_number"]),
        _first(metadata, ["sanity_invoice_number", "invoice_number"]),
        session_id,
        sanity=sanity,
    )

    shipping_address = _shipping_address(session, email)
    charge_fields = _charge_fields(pi)
    billing_name = charge_fields.pop("_billingName", None)
    customer_name = (
        (shipping_address or {}).get("name")
        or _first(metadata, ["customer_name", "bill_to_name", "ship_to_name"])
        or to_str((session.get("customer_details") or {}).get("name"))
        or billing_name
        or email
    )
    user_id = _first(metadata, ["auth0_user_id", "auth0_sub", "userId", "user_id"])
    cart = build_cart_from_line_items(line_items or [], metadata)
    synced_at = now_iso()

    base_doc: Dict[str, Any] = {
        "_type": "order",
        "stripeSource": "checkout.session",
        "stripeSessionId": session_id,
        "orderNumber": order_number,
        "customerName": customer_name,
        "customerEmail": email,
        "totalAmount": total_amount,
        "status": order_status,
        "paymentStatus": payment_status,
        "stripeCheckoutStatus": session_status or None,
        "stripeCheckoutMode": to_str(session.get("mode")),
        "stripePaymentIntentStatus": to_str(pi.get("status")),
        "stripeLastSyncedAt": synced_at,
        "currency": currency,
        "amountSubtotal": amount_subtotal,
        "amountTax": amount_tax,
        "paymentIntentId": to_str(pi.get("id")) or _object_id(session.get("payment_intent")),
        **charge_fields,
        "checkoutDraft": True if order_status != "paid" else None,
        "shippingAddress": shipping_address,
        "userId": user_id,
        "cart": cart or None,
        "stripeSummary": build_stripe_summary(
            session=session, payment_intent=pi, event_type=event_type, event_created=event_created
        ),
    }
    base_doc = {key: value for key, value in base_doc.items() if value is not None}
    base_doc.update(_shipping_fields(shipping, amount_shipping, currency))

    order_slug = create_order_slug(order_number, session_id)
    if order_slug:
        base_doc["slug"] = {"_type": "slug", "current": order_slug}

    if email:
        try:
            customer_id = await sanity.fetch('*[_type == "customer" && email == $email][0]._id', {"email": email})
            if customer_id:
                base_doc["customerRef"] = reference(customer_id)
        except ExternalAPIException as e:
            logger.warning(f"⚠️ Customer lookup failed for {email}: {e}")

    if existing_id:
        await sanity.patch(existing_id).set(base_doc).set_if_missing({"webhookNotified": True}).commit()
        order_id = existing_id
        logger.info(f"🔄 Order {order_number} updated from checkout {session_id}")
    else:
        response = await sanity.create({**base_doc, "createdAt": synced_at, "webhookNotified": True})
        order_id = SanityClient.created_id(response)
        logger.info(f"✅ Order {order_number} created from checkout {session_id}")

    return {
        "orderId": order_id,
        "invoiceId": _first(metadata, ["sanity_invoice_id", "invoice_id"]),
        "paymentStatus": payment_status,
        "orderStatus": order_status,
        "orderNumber": order_number,
        "created": not existing_id,
        "customerEmail": email,
        "customerName": customer_name,
        "shippingAddress": shipping_address,
        "cart": cart,
        "totalAmount": total_amount,
        "amountSubtotal": amount_subtotal,
        "amountTax": amount_tax,
        "amountShipping": amount_shipping,
        "currency": currency,
        "metadata": metadata,
    }


async def mark_expired_cart_recovered(
    session_id: Optional[str], order_id: Optional[str], sanity: Optional[SanityClient] = None, **event
) -> bool:
    """Marca como recuperado el expiredCart de una sesión que terminó en orden."""
    if not session_id:
        return False
    sanity = sanity or get_sanity_client()
    cart_doc = await sanity.fetch(
        '*[_type == "expiredCart" && stripeSessionId == $sid][0]{_id}', {"sid": session_id}
    )
    if not (cart_doc or {}).get("_id"):
        return False

    values: Dict[str, Any] = {"status": "recovered", "recoveredAt": now_iso()}
    if order_id:
        values["orderRef"] = reference(order_id)
    record = build_event_record("checkout.recovered", **event)
    try:
        await (
            sanity.patch(cart_doc["_id"])
            .set(values)
            .set_if_missing({"events": []})
            .append("events", [record])
            .commit()
        )
        return True
    except ExternalAPIException as e:
        logger.warning(f"⚠️ Failed to mark expired cart {cart_doc['_id']} as recovered: {e}")
        return False


async def _session_from_identifier(gateway: StripeGateway, identifier: str) -> Optional[Dict[str, Any]]:
    """Resuelve la checkout session a partir de un id cs_, pi_ o ch_."""
    if identifier.startswith("cs_"):
        return await gateway.retrieve_checkout_session(identifier, expand=["payment_intent"])

    payment_intent_id = identifier
    if identifier.startswith("ch_"):
        charge = await gateway.retrieve_charge(identifier)
        payment_intent_id = _object_id(charge.get("payment_intent"))
        if not payment_intent_id:
            return None
    elif not identifier.startswith("pi_"):
        raise ValidationException(f"Unsupported Stripe id: {identifier}", field="id", invalid_value=identifier)

    sessions = await gateway.list_checkout_sessions(payment_intent=payment_intent_id, limit=1)
    data = sessions.get("data") or []
    if not data:
        return None
    return await gateway.retrieve_checkout_session(data[0]["id"], expand=["payment_intent"])


async def reprocess_stripe_session(
    identifier: str,
    auto_fulfill: bool = False,
    sanity: Optional[SanityClient] = None,
    gateway: Optional[StripeGateway] = None,
) -> Dict[str, Any]:
    """
    Vuelve a sincronizar una orden desde Stripe.

    Args:
        identifier: Id de checkout session (cs_), payment intent (pi_) o charge (ch_)
        auto_fulfill: Se acepta por compatibilidad; el fulfillment automático no
            forma parte de este servicio

    Returns:
        Dict: orderId, invoiceId, paymentStatus y número de orden

    Raises:
        ValidationException: Si falta el id o tiene un prefijo no soportado
        NotFoundException: Si no se encuentra la checkout session
    """
    identifier = to_str(identifier)
    if not identifier:
        raise ValidationException("Missing Stripe id", field="id")

    gateway = gateway or get_stripe_gateway()
    sanity = sanity or get_sanity_client()

    session = await _session_from_identifier(gateway, identifier)
    if not session:
        raise NotFoundException(
            f"No checkout session found for {identifier}", resource="checkout.session", resource_id=identifier
        )

    payment_intent = session.get("payment_intent") if isinstance(session.get("payment_intent"), dict) else None
    payment_intent_id = _object_id(session.get("payment_intent"))
    if payment_intent_id and (payment_intent is None or "charges" not in payment_intent):
        try:
            payment_intent = await gateway.retrieve_payment_intent(payment_intent_id, expand=["latest_charge"])
        except ExternalAPIException as e:
            logger.warning(f"⚠️ Could not load payment intent {payment_intent_id}: {e}")

    line_items = await gateway.list_session_line_items(session["id"])
    result = await upsert_order_from_session(
        session, payment_intent, line_items, event_type="manual.reprocess", sanity=sanity, gateway=gateway
    )
    if auto_fulfill:
        logger.info(f"ℹ️ autoFulfill requested for {identifier}; fulfillment is handled outside this service")

    return {
        "orderId": result["orderId"],
        "invoiceId": result["invoiceId"],
        "paymentStatus": result["paymentStatus"],
        "orderNumber": result["orderNumber"],
        "stripeSessionId": session["id"],
    }


# === ESTADO DE PAGO ===


async def update_order_payment_status(
    payment_status: str,
    order_status: Optional[str] = None,
    invoice_status: Optional[str] = None,
    invoice_stripe_status: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    charge_id: Optional[str] = None,
    stripe_session_id: Optional[str] = None,
    additional_order_fields: Optional[Dict[str, Any]] = None,
    additional_invoice_fields: Optional[Dict[str, Any]] = None,
    preserve_existing_failure_diagnostics: bool = False,
    event: Optional[Dict[str, Any]] = None,
    sanity: Optional[SanityClient] = None,
) -> bool:
    """
    Actualiza el estado de pago de una orden y de su invoice vinculada.

    La orden se busca por payment intent, charge o checkout session.

    Args:
        payment_status: Nuevo paymentStatus
        order_status: Nuevo status de la orden
        invoice_status: Nuevo status de la invoice
        invoice_stripe_status: Valor de stripeInvoiceStatus
        additional_order_fields: Campos extra para la orden
        additional_invoice_fields: Campos extra para la invoice
        preserve_existing_failure_diagnostics: No sobrescribir paymentFailureCode
            ni paymentFailureMessage si la orden ya los tiene
        event: Evento a agregar en orderEvents (event_type, label, message, ...)

    Returns:
        bool: True si se encontró y actualizó la orden
    """
    payment_intent_id = to_str(payment_intent_id) or ""
    charge_id = to_str(charge_id) or ""
    stripe_session_id = to_str(stripe_session_id) or ""
    if not (payment_intent_id or charge_id or stripe_session_id):
        return False

    sanity = sanity or get_sanity_client()
    order = await sanity.fetch(
        '*[_type == "order" && (($pi != "" && paymentIntentId == $pi) || '
        '($charge != "" && chargeId == $charge) || ($session != "" && stripeSessionId == $session))][0]'
        "{_id, orderNumber, customerRef, customerEmail, paymentFailureCode, paymentFailureMessage, invoiceRef->{_id}}",
        {"pi": payment_intent_id, "charge": charge_id, "session": stripe_session_id},
    )
    if not order or not order.get("_id"):
        logger.debug(f"No order found for payment {payment_intent_id or charge_id or stripe_session_id}")
        return False

    synced_at = now_iso()
    order_fields: Dict[str, Any] = {"paymentStatus": payment_status, "stripeLastSyncedAt": synced_at}
    if order_status:
        order_fields["status"] = order_status
    for key, value in (additional_order_fields or {}).items():
        if value is None:
            continue
        if (
            preserve_existing_failure_diagnostics
            and key in ("paymentFailureCode", "paymentFailureMessage")
            and to_str(order.get(key))
        ):
            continue
        order_fields[key] = value
    await sanity.patch(order["_id"]).set(order_fields).commit()

    invoice_id = ((order.get("invoiceRef") or {}).get("_id")) if isinstance(order.get("invoiceRef"), dict) else None
    if not invoice_id and payment_intent_id:
        invoice_id = await sanity.fetch(
            '*[_type == "invoice" && paymentIntentId == $pi][0]._id', {"pi": payment_intent_id}
        )
    if not invoice_id:
        invoice_id = await sanity.fetch(
            '*[_type == "invoice" && (orderNumber == $orderNumber || orderRef._ref == $orderId)][0]._id',
            {"orderNumber": order.get("orderNumber") or "", "orderId": order["_id"]},
        )

    if invoice_id:
        invoice_fields: Dict[str, Any] = {"stripeLastSyncedAt": synced_at}
        if invoice_status:
            invoice_fields["status"] = invoice_status
        if invoice_stripe_status:
            invoice_fields["stripeInvoiceStatus"] = invoice_stripe_status
        invoice_fields.update({k: v for k, v in (additional_invoice_fields or {}).items() if v is not None})
        await sanity.patch(invoice_id).set(invoice_fields).commit()

    if event:
        event = dict(event)
        event_type = event.pop("event_type", None) or invoice_stripe_status or "payment.status"
        event["status"] = event.get("status") or order_status or payment_status
        await append_order_event(order["_id"], event_type, sanity=sanity, **event)

    logger.info(f"✅ Order {order.get('orderNumber') or order['_id']} payment status → {payment_status}")
    return True


# === DIAGNÓSTICO DE FALLOS ===


async def resolve_payment_failure_diagnostics(
    payment_intent: Dict[str, Any], gateway: Optional[StripeGateway] = None
) -> Dict[str, Optional[str]]:
    """
    Construye código y mensaje de fallo de un payment intent.

    Combina last_payment_error con el outcome del charge (reason,
    network_status, seller_message) y agrega códigos y doc_url al mensaje.

    Args:
        payment_intent: Payment intent fallido o cancelado
        gateway: Gateway para cargar el charge si no viene expandido

    Returns:
        Dict: code y message (pueden ser None)
    """
    pi = payment_intent or {}
    last_error = pi.get("last_payment_error") or {}
    code = to_str(last_error.get("code"))
    additional_codes: List[str] = []
    decline_code = to_str(last_error.get("decline_code"))
    if decline_code and decline_code != code:
        additional_codes.append(decline_code)
    doc_url = to_str(last_error.get("doc_url"))
    message = to_str(last_error.get("message")) or to_str(pi.get("cancellation_reason"))

    charge = pi.get("latest_charge") if isinstance(pi.get("latest_charge"), dict) else None
    latest_charge_id = to_str(pi.get("latest_charge")) if isinstance(pi.get("latest_charge"), str) else None
    if charge is None and gateway is not None and (latest_charge_id or not code or not message):
        try:
            if latest_charge_id:
                charge = await gateway.retrieve_charge(latest_charge_id)
            elif pi.get("id"):
                listing = await gateway.list_charges(payment_intent=pi["id"], limit=1)
                charge = ((listing or {}).get("data") or [None])[0]
        except ExternalAPIException as e:
            logger.warning(f"⚠️ Could not load charge for payment intent {pi.get('id')}: {e}")

    if charge:
        outcome = charge.get("outcome") or {}
        reason = to_str(outcome.get("reason"))
        failure_code = to_str(charge.get("failure_code"))
        if reason:
            if code and code != reason:
                additional_codes.append(code)
            code = reason
        elif failure_code:
            if not code:
                code = failure_code
            elif failure_code != code:
                additional_codes.append(failure_code)
        network_status = to_str(outcome.get("network_status"))
        if network_status and network_status != code:
            additional_codes.append(network_status)

        seller_message = to_str(outcome.get("seller_message"))
        failure_message = to_str(charge.get("failure_message"))
        if not message:
            message = seller_message or failure_message
        elif seller_message and seller_message not in message:
            message = f"{message} ({seller_message})"
        elif failure_message and failure_message not in message:
            message = f"{message} ({failure_message})"

    codes: List[str] = []
    for item in [code, *additional_codes]:
        if item and item not in codes:
            codes.append(item)
    code_text = " | ".join(codes) if codes else None

    if message and doc_url and doc_url not in message:
        message = f"{message} ({doc_url})"
    missing_codes = [item for item in codes if not message or item not in message]
    if missing_codes:
        suffix = f"(codes: {', '.join(missing_codes)})"
        message = f"{message} {suffix}" if message else f"Payment failed {suffix}"

    return {"code": code_text, "message": message}


def _failure_fields(diagnostics: Dict[str, Optional[str]]) -> Dict[str, Any]:
    return {
        key: value
        for key, value in {
            "paymentFailureCode": diagnostics.get("code"),
            "paymentFailureMessage": diagnostics.get("message"),
        }.items()
        if value
    }


async def _find_invoice_id(
    sanity: SanityClient, metadata: Dict[str, str], invoice_ref: Any, payment_intent_id: Optional[str]
) -> Optional[str]:
    candidates = id_variants(_first(metadata, ["sanity_invoice_id", "invoice_id"]))
    ref_target = (invoice_ref or {}).get("_ref") if isinstance(invoice_ref, dict) else None
    candidates.extend(item for item in id_variants(ref_target) if item not in candidates)
    if candidates:
        found = await sanity.fetch('*[_type == "invoice" && _id in $ids][0]._id', {"ids": candidates})
        if found:
            return found
    if payment_intent_id:
        return await sanity.fetch('*[_type == "invoice" && paymentIntentId == $pi][0]._id', {"pi": payment_intent_id})
    return None


async def mark_payment_intent_failure(
    payment_intent: Dict[str, Any],
    stripe_event_id: Optional[str] = None,
    event_created: Optional[int] = None,
    sanity: Optional[SanityClient] = None,
    gateway: Optional[StripeGateway] = None,
) -> bool:
    """
    Registra un payment_intent.payment_failed en la orden y la invoice.

    Returns:
        bool: True si se encontró la orden
    """
    sanity = sanity or get_sanity_client()
    pi = payment_intent or {}
    pi_id = to_str(pi.get("id"))
    if not pi_id:
        return False

    order = await sanity.fetch(
        '*[_type == "order" && (paymentIntentId == $pid || stripeSessionId == $pid)][0]{_id, invoiceRef}',
        {"pid": pi_id},
    )
    diagnostics = await resolve_payment_failure_diagnostics(pi, gateway=gateway)
    raw_status = (to_str(pi.get("status")) or "").lower()
    payment_status = raw_status if raw_status in NON_FAILURE_INTENT_STATUSES else "failed"
    order_status = "paid" if raw_status == "succeeded" else "cancelled"
    summary = build_stripe_summary(
        payment_intent=pi,
        failure_code=diagnostics.get("code"),
        failure_message=diagnostics.get("message"),
        event_type="payment_intent.payment_failed",
        event_created=event_created,
    )
    metadata = normalize_metadata(pi.get("metadata"))
    synced_at = now_iso()

    if order and order.get("_id"):
        await (
            sanity.patch(order["_id"])
            .set(
                {
                    "paymentStatus": payment_status,
                    "status": order_status,
                    "stripeLastSyncedAt": synced_at,
                    "stripeSummary": summary,
                    **_failure_fields(diagnostics),
                }
            )
            .commit()
        )
        await append_order_event(
            order["_id"],
            "payment_intent.payment_failed",
            sanity=sanity,
            status=payment_status,
            label="Payment failed",
            message=diagnostics.get("message"),
            amount=_cents(pi.get("amount")),
            currency=to_str(pi.get("currency")),
            stripe_event_id=stripe_event_id,
            occurred_at=event_created,
            metadata=metadata,
        )

    invoice_id = await _find_invoice_id(sanity, metadata, (order or {}).get("invoiceRef"), pi_id)
    if invoice_id:
        await (
            sanity.patch(invoice_id)
            .set(
                {
                    "status": "cancelled",
                    "stripeInvoiceStatus": "payment_intent.payment_failed",
                    "stripeLastSyncedAt": synced_at,
                    "stripeSummary": summary,
                    **_failure_fields(diagnostics),
                }
            )
            .commit()
        )

    if not order:
        logger.warning(f"⚠️ No order found for failed payment intent {pi_id}")
        return False
    logger.info(f"❌ Payment intent {pi_id} marked as failed: {diagnostics.get('code')}")
    return True


async def handle_payment_intent_canceled(
    payment_intent: Dict[str, Any],
    stripe_event_id: Optional[str] = None,
    event_created: Optional[int] = None,
    sanity: Optional[SanityClient] = None,
    gateway: Optional[StripeGateway] = None,
) -> bool:
    """Aplica un payment_intent.canceled preservando diagnósticos previos."""
    pi = payment_intent or {}
    metadata = normalize_metadata(pi.get("metadata"))
    diagnostics = await resolve_payment_failure_diagnostics(pi, gateway=gateway)
    failure = _failure_fields(diagnostics)
    return await update_order_payment_status(
        payment_status=to_str(pi.get("status")) or "canceled",
        order_status="cancelled",
        invoice_status="cancelled",
        invoice_stripe_status="payment_intent.canceled",
        payment_intent_id=pi.get("id"),
        stripe_session_id=_first(metadata, ["checkout_session_id", "stripe_checkout_session_id"]),
        additional_order_fields=failure,
        additional_invoice_fields=failure,
        preserve_existing_failure_diagnostics=True,
        event={
            "event_type": "payment_intent.canceled",
            "label": "Payment canceled",
            "message": diagnostics.get("message"),
            "amount": _cents(pi.get("amount")),
            "currency": to_str(pi.get("currency")),
            "stripe_event_id": stripe_event_id,
            "occurred_at": event_created,
            "metadata": metadata,
        },
        sanity=sanity,
    )


# === CHECKOUT EXPIRADO ===


async def record_expired_cart(
    session: Dict[str, Any],
    summary: Dict[str, Any],
    event_record: Dict[str, Any],
    line_items: Optional[List[Dict[str, Any]]] = None,
    sanity: Optional[SanityClient] = None,
) -> Optional[str]:
    """
    Crea o actualiza el documento expiredCart de una sesión sin orden.

    Returns:
        Id del documento expiredCart
    """
    sanity = sanity or get_sanity_client()
    session_id = session["id"]
    metadata = normalize_metadata(session.get("metadata"))
    customer_details = session.get("customer_details") or {}
    expired_at = unix_to_iso(session.get("expires_at")) or now_iso()

    values = prune(
        {
            "stripeSessionId": session_id,
            "clientReferenceId": session.get("client_reference_id"),
            "status": "expired",
            "paymentStatus": to_str(session.get("payment_status")),
            "customerEmail": customer_details.get("email") or session.get("customer_email"),
            "customerName": customer_details.get("name"),
            "stripeCustomerId": _object_id(session.get("customer")),
            "totalAmount": _cents(session.get("amount_total")),
            "currency": (to_str(session.get("currency")) or "").upper() or None,
            "metadata": [
                {"_type": "stripeMetadataEntry", "_key": new_key(), "key": key, "value": value}
                for key, value in metadata.items()
            ],
            "cart": build_cart_from_line_items(line_items or [], metadata),
            "stripeSummary": summary,
            "expiredAt": expired_at,
        }
    )

    existing = await sanity.fetch('*[_type == "expiredCart" && stripeSessionId == $sid][0]{_id}', {"sid": session_id})
    if existing and existing.get("_id"):
        await (
            sanity.patch(existing["_id"])
            .set(values)
            .set_if_missing({"events": []})
            .append("events", [event_record])
            .commit()
        )
        return existing["_id"]

    response = await sanity.create(
        {"_type": "expiredCart", **values, "createdAt": now_iso(), "events": [event_record]}
    )
    return SanityClient.created_id(response)


async def handle_checkout_expired(
    session: Dict[str, Any],
    stripe_event_id: Optional[str] = None,
    event_created: Optional[int] = None,
    sanity: Optional[SanityClient] = None,
    gateway: Optional[StripeGateway] = None,
) -> Dict[str, Any]:
    """
    Procesa un checkout.session.expired.

    Marca la orden como expirada si existe; en caso contrario guarda el
    carrito abandonado como expiredCart.

    Returns:
        Dict: orderId o expiredCartId
    """
    sanity = sanity or get_sanity_client()
    session_id = to_str(session.get("id"))
    if not session_id:
        raise ValidationException("Checkout session id is required", field="id")

    metadata = normalize_metadata(session.get("metadata"))
    email = to_str((session.get("customer_details") or {}).get("email")) or to_str(session.get("customer_email"))
    expired_at = unix_to_iso(session.get("expires_at"))
    message = "Checkout session expired before payment was completed."
    if email:
        message += f" Customer: {email}."
    if expired_at:
        message += f" Expired at {expired_at}."
    message += f" (session {session_id})"
    failure = {"paymentFailureCode": "checkout.session.expired", "paymentFailureMessage": message}

    summary = build_stripe_summary(
        session=session,
        failure_code=failure["paymentFailureCode"],
        failure_message=message,
        event_type="checkout.session.expired",
        event_created=event_created,
    )
    amount = _cents(session.get("amount_total"))
    currency = to_str(session.get("currency"))
    event_fields = {
        "status": "expired",
        "label": "Checkout expired",
        "message": message,
        "amount": amount,
        "currency": currency,
        "stripe_event_id": stripe_event_id,
        "occurred_at": event_created,
        "metadata": metadata,
    }

    order = await sanity.fetch('*[_type == "order" && stripeSessionId == $sid][0]{_id}', {"sid": session_id})
    if order and order.get("_id"):
        await (
            sanity.patch(order["_id"])
            .set(
                {
                    "status": "expired",
                    "paymentStatus": "expired",
                    "stripeLastSyncedAt": now_iso(),
                    "stripeSummary": summary,
                    **failure,
                }
            )
            .commit()
        )
        await append_order_event(order["_id"], "checkout.session.expired", sanity=sanity, **event_fields)

        invoice_id = normalize_id(_first(metadata, ["sanity_invoice_id", "invoice_id"]))
        if invoice_id:
            try:
                await (
                    sanity.patch(invoice_id)
                    .set({"status": "expired", "stripeInvoiceStatus": "checkout.session.expired", **failure})
                    .commit()
                )
            except ExternalAPIException as e:
                logger.warning(f"⚠️ Failed to mark invoice {invoice_id} as expired: {e}")
        logger.info(f"⏰ Order {order['_id']} marked as expired")
        return {"orderId": order["_id"]}

    line_items: List[Dict[str, Any]] = []
    if gateway is not None:
        try:
            line_items = await gateway.list_session_line_items(session_id)
        except ExternalAPIException as e:
            logger.warning(f"⚠️ Could not load line items for expired checkout {session_id}: {e}")

    record = build_event_record("checkout.session.expired", **event_fields)
    cart_id = await record_expired_cart(session, summary, record, line_items, sanity=sanity)
    logger.info(f"🛒 Expired checkout {session_id} recorded as abandoned cart {cart_id}")
    return {"expiredCartId": cart_id}


# === PAGOS ASÍNCRONOS ===


async def handle_checkout_async_payment(
    session: Dict[str, Any],
    outcome: str,
    stripe_event_id: Optional[str] = None,
    event_created: Optional[int] = None,
    sanity: Optional[SanityClient] = None,
    gateway: Optional[StripeGateway] = None,
) -> Dict[str, Any]:
    """
    Aplica el resultado de un pago asíncrono (ACH, transferencias, etc.).

    Args:
        session: Checkout session
        outcome: "success" o "failure"

    Returns:
        Dict: updated (bool), paymentStatus y orderId si se creó la orden
    """
    if outcome not in ("success", "failure"):
        raise ValidationException(f"Invalid async payment outcome: {outcome}", field="outcome", invalid_value=outcome)

    sanity = sanity or get_sanity_client()
    session_id = to_str(session.get("id"))
    metadata = normalize_metadata(session.get("metadata"))
    payment_intent = session.get("payment_intent") if isinstance(session.get("payment_intent"), dict) else None
    payment_intent_id = _object_id(session.get("payment_intent"))
    if payment_intent is None and payment_intent_id and gateway is not None:
        try:
            payment_intent = await gateway.retrieve_payment_intent(payment_intent_id, expand=["latest_charge"])
        except ExternalAPIException as e:
            logger.warning(f"⚠️ Could not load payment intent {payment_intent_id}: {e}")

    event_type = (
        "checkout.session.async_payment_succeeded" if outcome == "success" else "checkout.session.async_payment_failed"
    )
    amount = _cents(session.get("amount_total"))
    currency = to_str(session.get("currency"))

    if outcome == "success":
        summary = build_stripe_summary(
            session=session, payment_intent=payment_intent, event_type=event_type, event_created=event_created
        )
        updated = await update_order_payment_status(
            payment_status="paid",
            order_status="paid",
            invoice_status="paid",
            invoice_stripe_status=event_type,
            payment_intent_id=payment_intent_id,
            stripe_session_id=session_id,
            additional_order_fields={"stripeSummary": summary, "checkoutDraft": False},
            additional_invoice_fields={"stripeSummary": summary},
            event={
                "event_type": event_type,
                "label": "Async payment succeeded",
                "message": f"Asynchronous payment for checkout {session_id} succeeded",
                "amount": amount,
                "currency": currency,
                "stripe_event_id": stripe_event_id,
                "occurred_at": event_created,
                "metadata": metadata,
            },
            sanity=sanity,
        )
        if not updated and gateway is not None:
            line_items = await gateway.list_session_line_items(session_id)
            result = await upsert_order_from_session(
                session,
                payment_intent,
                line_items,
                event_type=event_type,
                event_created=event_created,
                sanity=sanity,
                gateway=gateway,
            )
            return {"updated": True, "paymentStatus": result["paymentStatus"], "orderId": result["orderId"]}
        return {"updated": updated, "paymentStatus": "paid"}

    diagnostics = (
        await resolve_payment_failure_diagnostics(payment_intent, gateway=gateway)
        if payment_intent
        else {"code": None, "message": None}
    )
    failure = _failure_fields(diagnostics) or {
        "paymentFailureCode": event_type,
        "paymentFailureMessage": f"Asynchronous payment for checkout {session_id} failed",
    }
    summary = build_stripe_summary(
        session=session,
        payment_intent=payment_intent,
        failure_code=failure.get("paymentFailureCode"),
        failure_message=failure.get("paymentFailureMessage"),
        event_type=event_type,
        event_created=event_created,
    )
    updated = await update_order_payment_status(
        payment_status="failed",
        order_status="cancelled",
        invoice_status="cancelled",
        invoice_stripe_status=event_type,
        payment_intent_id=payment_intent_id,
        stripe_session_id=session_id,
        additional_order_fields={**failure, "stripeSummary": summary},
        additional_invoice_fields={**failure, "stripeSummary": summary},
        event={
            "event_type": event_type,
            "label": "Async payment failed",
            "message": failure.get("paymentFailureMessage"),
            "amount": amount,
            "currency": currency,
            "stripe_event_id": stripe_event_id,
            "occurred_at": event_created,
            "metadata": metadata,
        },
        sanity=sanity,
    )
    return {"updated": updated, "paymentStatus": "failed"}


# === REEMBOLSOS ===


async def handle_refund_event(
    event: Dict[str, Any],
    sanity: Optional[SanityClient] = None,
    gateway: Optional[StripeGateway] = None,
) -> bool:
    """
    Aplica charge.refunded, charge.refund.created o charge.refund.updated.

    Un reembolso exitoso marca la orden como refunded (total) o
    partially_refunded; mientras el refund esté pendiente el pago sigue paid.

    Args:
        event: Evento de Stripe (o un objeto con type, id, created y data.object)

    Returns:
        bool: True si se actualizó una orden
    """
    event_type = to_str(event.get("type")) or "charge.refunded"
    obj = ((event.get("data") or {}).get("object")) or {}
    is_refund = obj.get("object") == "refund" or event_type.startswith("charge.refund.")
    refund: Optional[Dict[str, Any]] = obj if is_refund else None
    charge: Optional[Dict[str, Any]] = None if is_refund else obj

    if refund is not None:
        charge_ref = refund.get("charge")
        if isinstance(charge_ref, dict):
            charge = charge_ref
        elif charge_ref and gateway is not None:
            try:
                charge = await gateway.retrieve_charge(charge_ref, expand=["payment_intent"])
            except ExternalAPIException as e:
                logger.warning(f"⚠️ Could not load charge {charge_ref} for refund {refund.get('id')}: {e}")
    elif charge is not None:
        refunds = ((charge.get("refunds") or {}).get("data")) or []
        refund = refunds[0] if refunds else None

    charge = charge or {}
    refund = refund or {}
    charge_id = to_str(charge.get("id")) or _object_id(refund.get("charge"))
    payment_intent_id = _object_id(charge.get("payment_intent")) or _object_id(refund.get("payment_intent"))

    refunded_amount = _cents(charge.get("amount_refunded"))
    if refunded_amount is None:
        refunded_amount = _cents(refund.get("amount"))
    charge_amount = to_number(charge.get("amount"))
    amount_refunded_cents = to_number(charge.get("amount_refunded"))
    full_refund = bool(charge.get("refunded")) or (
        charge_amount is not None and amount_refunded_cents is not None and amount_refunded_cents >= charge_amount
    )
    refund_status = (to_str(refund.get("status")) or "").lower()
    succeeded = refund_status == "succeeded" or bool(charge.get("refunded"))

    if succeeded:
        payment_status = "refunded" if full_refund else "partially_refunded"
    else:
        payment_status = "paid"
    final_status = "refunded" if succeeded and full_refund else None

    payment_intent = charge.get("payment_intent") if isinstance(charge.get("payment_intent"), dict) else None
    summary = build_stripe_summary(
        payment_intent=payment_intent, charge=charge or None, event_type=event_type, event_created=event.get("created")
    )
    currency = to_str(refund.get("currency") or charge.get("currency"))
    refund_id = to_str(refund.get("id"))
    amount_for_message = _cents(refund.get("amount"))
    if amount_for_message is None:
        amount_for_message = refunded_amount

    if refund_id:
        label = f"Refund {refund_id}"
        parts = [f"Refund {refund_status or 'updated'}"]
        if amount_for_message is not None:
            parts.append(f"Amount {amount_for_message:.2f} {(currency or '').upper()}".rstrip())
        if charge_id:
            parts.append(f"Charge {charge_id}")
        message = " • ".join(parts)
    else:
        label = "Charge refunded"
        message = f"Charge {charge_id} refunded"

    additional = {
        "amountRefunded": refunded_amount,
        "lastRefundId": refund_id,
        "lastRefundStatus": refund_status or None,
        "lastRefundReason": to_str(refund.get("reason")),
        "lastRefundedAt": unix_to_iso(refund.get("created")) or now_iso(),
        "stripeSummary": summary,
    }
    return await update_order_payment_status(
        payment_status=payment_status,
        order_status=final_status,
        invoice_status=final_status,
        invoice_stripe_status=event_type,
        payment_intent_id=payment_intent_id,
        charge_id=charge_id,
        additional_order_fields=additional,
        additional_invoice_fields={k: v for k, v in additional.items() if k != "stripeSummary"},
        event={
            "event_type": event_type,
            "status": refund_status or payment_status,
            "label": label,
            "message": message,
            "amount": refunded_amount,
            "currency": currency,
            "stripe_event_id": to_str(event.get("id")),
            "occurred_at": event.get("created"),
            "metadata": normalize_metadata(refund.get("metadata") or charge.get("metadata")),
        },
        sanity=sanity,
    )
