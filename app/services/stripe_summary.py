"""
Resumen de pago de Stripe almacenado en órdenes e invoices (stripeSummary).

El resumen es un snapshot plano del estado de pago: estado, último evento,
identificadores, montos, cliente, direcciones, método de pago, intentos y
metadata. Los valores vacíos se eliminan con prune().
"""

import json
import logging
import math
from typing import Any, Dict, List, Optional

from app.utils.id_utils import now_iso, unix_to_iso

logger = logging.getLogger(__name__)


def prune(value: Dict[str, Any]) -> Dict[str, Any]:
    """
    Elimina None, strings vacíos, números no finitos y colecciones vacías.

    Args:
        value: Diccionario a limpiar (se recorre recursivamente)

    Returns:
        Dict: Copia limpia
    """
    output: Dict[str, Any] = {}
    for key, item in (value or {}).items():
        cleaned = _prune_value(item)
        if cleaned is not None:
            output[key] = cleaned
    return output


def _prune_value(item: Any) -> Any:
    if item is None:
        return None
    if isinstance(item, bool):
        return item
    if isinstance(item, str):
        return item.strip() or None
    if isinstance(item, (int, float)):
        return item if math.isfinite(item) else None
    if isinstance(item, dict):
        return prune(item) or None
    if isinstance(item, (list, tuple)):
        cleaned = [_prune_value(entry) for entry in item]
        cleaned = [entry for entry in cleaned if entry is not None]
        return cleaned or None
    return None


def _cents(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value / 100


def normalize_address(
    address: Optional[Dict[str, Any]],
    name: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> Dict[str, Any]:
    """Dirección de Stripe (line1, postal_code, ...) al formato de resumen."""
    address = address or {}
    return prune(
        {
            "name": name,
            "email": email,
            "phone": phone,
            "line1": address.get("line1"),
            "line2": address.get("line2"),
            "city": address.get("city"),
            "state": address.get("state") or address.get("province"),
            "postalCode": address.get("postal_code"),
            "country": address.get("country"),
        }
    )


def _metadata_entries(sources: List[tuple]) -> List[Dict[str, str]]:
    entries = []
    seen = set()
    for label, data in sources:
        for key, raw_value in (data or {}).items():
            if not key or (label, key) in seen:
                continue
            seen.add((label, key))
            entries.append({"key": key, "value": "" if raw_value is None else str(raw_value), "source": label})
    return entries


def _attempt_entries(payment_intent: Optional[Dict[str, Any]], charge: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    attempts = []
    payment_intent = payment_intent or {}

    last_error = payment_intent.get("last_payment_error")
    if last_error:
        attempts.append(
            {
                "type": "payment_intent.last_payment_error",
                "status": payment_intent.get("status"),
                "created": unix_to_iso(last_error.get("created")),
                "code": last_error.get("code") or last_error.get("decline_code"),
                "message": last_error.get("message"),
            }
        )

    charges = [charge] if charge else ((payment_intent.get("charges") or {}).get("data") or [])
    for item in charges:
        outcome = item.get("outcome") or {}
        attempts.append(
            {
                "type": "charge",
                "status": item.get("status"),
                "created": unix_to_iso(item.get("created")),
                "code": item.get("failure_code") or outcome.get("reason"),
                "message": item.get("failure_message") or outcome.get("seller_message"),
            }
        )
    return attempts


def _line_item_entries(session: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    lines = (session or {}).get("display_items") or (session or {}).get("line_items")
    if isinstance(lines, dict):
        lines = lines.get("data")
    if not isinstance(lines, list):
        return []

    entries = []
    for item in lines:
        product = ((item.get("price") or {}).get("product")) if isinstance(item.get("price"), dict) else None
        product = product if isinstance(product, dict) else {}
        product_metadata = product.get("metadata") or None
        amount = _cents(item.get("amount_subtotal"))
        entries.append(
            prune(
                {
                    "name": (item.get("custom") or {}).get("name") or product.get("name") or item.get("description"),
                    "sku": (product_metadata or {}).get("sku") or item.get("sku") or item.get("id"),
                    "quantity": item.get("quantity"),
                    "amount": amount if amount is not None else item.get("amount_total"),
                    "metadata": json.dumps(product_metadata) if product_metadata else None,
                }
            )
        )
    return [entry for entry in entries if entry]


def _payment_method_details(payment_intent: Optional[Dict[str, Any]], charge: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    payment_intent = payment_intent or {}
    charge = charge or {}
    method_details = charge.get("payment_method_details") or {}
    payment_method = payment_intent.get("payment_method")
    card = method_details.get("card") or (payment_method.get("card") if isinstance(payment_method, dict) else None) or {}
    wallet = card.get("wallet")
    wallet_name = next(iter(wallet.keys()), None) if isinstance(wallet, dict) and wallet else None
    outcome = charge.get("outcome") or {}
    risk_score = outcome.get("risk_score")

    return prune(
        {
            "type": method_details.get("type") or (payment_intent.get("payment_method_types") or [None])[0],
            "brand": card.get("brand"),
            "last4": card.get("last4"),
            "exp": f"{card['exp_month']}/{card['exp_year']}" if card.get("exp_month") and card.get("exp_year") else None,
            "wallet": wallet_name,
            "issuer": card.get("issuer"),
            "riskLevel": outcome.get("risk_level") or (str(risk_score) if risk_score is not None else None),
        }
    )


def resolve_charge(payment_intent: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Charge expandido del payment intent (latest_charge o charges.data[0])."""
    payment_intent = payment_intent or {}
    latest = payment_intent.get("latest_charge")
    if isinstance(latest, dict):
        return latest
    charges = (payment_intent.get("charges") or {}).get("data") or []
    return charges[0] if charges else None


def build_stripe_summary(
    session: Optional[Dict[str, Any]] = None,
    payment_intent: Optional[Dict[str, Any]] = None,
    charge: Optional[Dict[str, Any]] = None,
    failure_code: Optional[str] = None,
    failure_message: Optional[str] = None,
    event_type: Optional[str] = None,
    event_created: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Construye el resumen de pago a partir de los objetos de Stripe disponibles.

    Args:
        session: Checkout session
        payment_intent: Payment intent
        charge: Charge (si no se pasa se toma del payment intent)
        failure_code: Código de fallo explícito
        failure_message: Mensaje de fallo explícito
        event_type: Tipo del evento que originó la actualización
        event_created: Timestamp Unix del evento

    Returns:
        Dict: Resumen limpio (sin valores vacíos)
    """
    session = session or {}
    pi = payment_intent or {}
    charge = charge or resolve_charge(pi) or {}

    last_error = pi.get("last_payment_error") or {}
    outcome = charge.get("outcome") or {}
    customer_details = session.get("customer_details") or {}
    pi_shipping = pi.get("shipping") or {}
    session_shipping = session.get("shipping_details") or {}
    billing_charge = ((pi.get("charges") or {}).get("data") or [{}])[0] or charge
    billing_details = billing_charge.get("billing_details") or {}
    pi_metadata = pi.get("metadata") or {}

    total = _cents(session.get("amount_total"))
    if total is None:
        total = _cents(pi.get("amount_received"))
    shipping_amount = _cents((session.get("shipping_cost") or {}).get("amount_total"))
    if shipping_amount is None:
        shipping_amount = _cents(pi_shipping.get("amount_subtotal"))
    currency = str(session.get("currency") or pi.get("currency") or charge.get("currency") or "").upper()

    return prune(
        {
            "updatedAt": now_iso(),
            "status": pi.get("status") or session.get("payment_status") or session.get("status"),
            "lastEventType": event_type,
            "lastEventCreated": unix_to_iso(event_created) if event_created else None,
            "failureCode": failure_code
            or last_error.get("code")
            or last_error.get("decline_code")
            or charge.get("failure_code"),
            "failureMessage": failure_message
            or last_error.get("message")
            or charge.get("failure_message")
            or outcome.get("seller_message"),
            "paymentIntentId": pi.get("id"),
            "paymentIntentCreated": unix_to_iso(pi.get("created")) if pi.get("created") else None,
            "checkoutSessionId": session.get("id")
            or (pi_metadata.get("checkout_session_id") if isinstance(pi_metadata.get("checkout_session_id"), str) else None),
            "checkoutStatus": session.get("status"),
            "checkoutExpiresAt": unix_to_iso(session.get("expires_at")) if session.get("expires_at") else None,
            "checkoutUrl": session.get("url"),
            "amounts": {
                "total": total,
                "subtotal": _cents(session.get("amount_subtotal")),
                "tax": _cents((session.get("total_details") or {}).get("amount_tax")),
                "shipping": shipping_amount,
                "currency": currency or None,
                "captured": _cents(pi.get("amount_capturable")),
                "refunded": _cents(charge.get("amount_refunded")),
            },
            "customer": {
                "id": pi.get("customer") if isinstance(pi.get("customer"), str) else None,
                "email": customer_details.get("email") or session.get("customer_email") or pi.get("receipt_email"),
                "name": customer_details.get("name") or pi_shipping.get("name") or billing_details.get("name"),
                "phone": customer_details.get("phone") or pi_shipping.get("phone") or billing_details.get("phone"),
                "ipAddress": session.get("client_reference_ip"),
            },
            "paymentMethod": _payment_method_details(pi, charge),
            "shippingAddress": normalize_address(
                pi_shipping.get("address") or session_shipping.get("address") or customer_details.get("address"),
                pi_shipping.get("name") or session_shipping.get("name"),
                customer_details.get("email"),
                customer_details.get("phone") or pi_shipping.get("phone"),
            ),
            "billingAddress": normalize_address(
                billing_details.get("address") or customer_details.get("address"),
                billing_details.get("name"),
                billing_details.get("email"),
                billing_details.get("phone"),
            ),
            "lineItems": _line_item_entries(session),
            "metadata": _metadata_entries(
                [
                    ("checkout_session", session.get("metadata")),
                    ("payment_intent", pi_metadata),
                    ("charge", charge.get("metadata")),
                ]
            ),
            "attempts": _attempt_entries(pi, charge or None),
        }
    )


def parse_stripe_summary(value: Any) -> Optional[Dict[str, Any]]:
    """
    Lee un stripeSummary almacenado.

    Acepta el objeto directo, un string JSON o el formato {"data": "<json>"}.

    Returns:
        Dict o None si no se puede interpretar
    """
    if not value:
        return None
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            logger.debug("Unparseable stripeSummary string")
            return None
        return parsed if isinstance(parsed, dict) else None
    if isinstance(value, dict):
        data = value.get("data")
        if isinstance(data, str):
            return parse_stripe_summary(data)
        if isinstance(data, dict):
            return data
        return value
    return None
