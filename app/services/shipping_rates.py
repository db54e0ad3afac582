"""
Cotización de tarifas de envío con ShipEngine.

Usa primero el endpoint /v1/rates/estimate (payload plano, solo códigos
postales para direcciones de EE. UU.) y, si no devuelve tarifas, intenta
/v1/rates con direcciones completas.
"""

import logging
from typing import Any, Dict, List, Optional

from app.core.config import get_settings
from app.db.shipengine_client import ShipEngineClient, get_shipengine_client
from app.utils.error_handler import ShippingAPIException, ValidationException
from app.utils.id_utils import to_number

logger = logging.getLogger(__name__)

US_STATE_ABBR = {
    "alabama": "AL",
    "alaska": "AK",
    "arizona": "AZ",
    "arkansas": "AR",
    "california": "CA",
    "colorado": "CO",
    "connecticut": "CT",
    "delaware": "DE",
    "district of columbia": "DC",
    "florida": "FL",
    "georgia": "GA",
    "hawaii": "HI",
    "idaho": "ID",
    "illinois": "IL",
    "indiana": "IN",
    "iowa": "IA",
    "kansas": "KS",
    "kentucky": "KY",
    "louisiana": "LA",
    "maine": "ME",
    "maryland": "MD",
    "massachusetts": "MA",
    "michigan": "MI",
    "minnesota": "MN",
    "mississippi": "MS",
    "missouri": "MO",
    "montana": "MT",
    "nebraska": "NE",
    "nevada": "NV",
    "new hampshire": "NH",
    "new jersey": "NJ",
    "new mexico": "NM",
    "new york": "NY",
    "north carolina": "NC",
    "north dakota": "ND",
    "ohio": "OH",
    "oklahoma": "OK",
    "oregon": "OR",
    "pennsylvania": "PA",
    "rhode island": "RI",
    "south carolina": "SC",
    "south dakota": "SD",
    "tennessee": "TN",
    "texas": "TX",
    "utah": "UT",
    "vermont": "VT",
    "virginia": "VA",
    "washington": "WA",
    "west virginia": "WV",
    "wisconsin": "WI",
    "wyoming": "WY",
}

BASE_REQUIRED_FIELDS = (
    "carrier_ids",
    "from_postal_code",
    "from_country_code",
    "to_country_code",
    "to_postal_code",
    "weight",
)
FULL_ADDRESS_FIELDS = ("name", "address_line1", "postal_code", "country_code")


def to_us_abbr(value: Optional[str]) -> Optional[str]:
    """Nombre de estado de EE. UU. a su abreviatura de dos letras."""
    if not value:
        return None
    text = str(value).strip()
    if len(text) == 2:
        return text.upper()
    return US_STATE_ABBR.get(text.lower(), text.upper())


def _is_us(address: Dict[str, Any]) -> bool:
    return str(address.get("country_code") or "").upper() == "US"


def _is_blank(value: Any) -> bool:
    if isinstance(value, list):
        return len(value) == 0
    return value is None or value == ""


def map_rate(rate: Dict[str, Any]) -> Dict[str, Any]:
    """Tarifa de ShipEngine al formato de respuesta."""
    shipping_amount = rate.get("shipping_amount") or {}
    return {
        "carrierId": rate.get("carrier_id"),
        "carrierCode": rate.get("carrier_code"),
        "carrier": rate.get("carrier_friendly_name"),
        "service": rate.get("service_friendly_name") or rate.get("service_type") or rate.get("service_code"),
        "serviceCode": rate.get("service_code"),
        "amount": to_number(shipping_amount.get("amount")) or 0.0,
        "currency": shipping_amount.get("currency") or "USD",
        "deliveryDays": rate.get("delivery_days"),
        "estimatedDeliveryDate": rate.get("estimated_delivery_date"),
    }


def extract_rates(data: Any) -> Optional[List[Dict[str, Any]]]:
    """Tarifas de rate_estimates o rate_response.rates; None si no hay ninguna lista."""
    if isinstance(data, list):
        return [map_rate(rate) for rate in data]
    if not isinstance(data, dict):
        return None
    if isinstance(data.get("rate_estimates"), list):
        return [map_rate(rate) for rate in data["rate_estimates"]]
    rates = (data.get("rate_response") or {}).get("rates")
    if isinstance(rates, list):
        return [map_rate(rate) for rate in rates]
    return None


def build_estimate_payload(
    ship_to: Dict[str, Any], ship_from: Dict[str, Any], package_details: Dict[str, Any], carrier_ids: List[str]
) -> Dict[str, Any]:
    """
    Payload plano para /v1/rates/estimate.

    Ciudad y estado solo se envían para direcciones fuera de EE. UU.
    """
    payload: Dict[str, Any] = {
        "carrier_ids": carrier_ids,
        "to_country_code": ship_to.get("country_code"),
        "to_postal_code": ship_to.get("postal_code"),
        "from_country_code": ship_from.get("country_code"),
        "from_postal_code": ship_from.get("postal_code"),
        "weight": package_details.get("weight"),
    }
    if not _is_us(ship_to):
        payload["to_city_locality"] = ship_to.get("city_locality")
        payload["to_state_province"] = ship_to.get("state_province")
    if not _is_us(ship_from):
        payload["from_city_locality"] = ship_from.get("city_locality")
        payload["from_state_province"] = ship_from.get("state_province")
    if package_details.get("dimensions"):
        payload["dimensions"] = package_details["dimensions"]
    return payload


def missing_estimate_fields(payload: Dict[str, Any], ship_to: Dict[str, Any], ship_from: Dict[str, Any]) -> List[str]:
    """Campos requeridos por ShipEngine que faltan en el payload de estimación."""
    required = list(BASE_REQUIRED_FIELDS)
    if not _is_us(ship_to):
        required += ["to_city_locality", "to_state_province"]
    if not _is_us(ship_from):
        required += ["from_city_locality", "from_state_province"]
    return [field for field in required if _is_blank(payload.get(field))]


def _shipment_address(address: Dict[str, Any]) -> Dict[str, Any]:
    state = address.get("state_province")
    return {
        "name": address.get("name"),
        "phone": address.get("phone"),
        "address_line1": address.get("address_line1"),
        "address_line2": address.get("address_line2"),
        "city_locality": address.get("city_locality"),
        "state_province": to_us_abbr(state) if _is_us(address) else state,
        "postal_code": address.get("postal_code"),
        "country_code": address.get("country_code"),
    }


def build_shipment_payload(
    ship_to: Dict[str, Any], ship_from: Dict[str, Any], package_details: Dict[str, Any], carrier_ids: List[str]
) -> Dict[str, Any]:
    """Payload estilo shipment para /v1/rates."""
    package: Dict[str, Any] = {"weight": package_details.get("weight")}
    if package_details.get("dimensions"):
        package["dimensions"] = package_details["dimensions"]
    return {
        "rate_options": {"carrier_ids": carrier_ids},
        "shipment": {
            "validate_address": "no_validation",
            "ship_to": _shipment_address(ship_to),
            "ship_from": _shipment_address(ship_from),
            "packages": [package],
        },
    }


def has_full_address(address: Dict[str, Any], require_phone: bool = False) -> bool:
    """Verifica si la dirección alcanza para /v1/rates."""
    fields = FULL_ADDRESS_FIELDS + (("phone",) if require_phone else ())
    return all(address.get(field) for field in fields)


async def get_shipping_rates(body: Dict[str, Any], client: Optional[ShipEngineClient] = None) -> Dict[str, Any]:
    """
    Cotiza tarifas de envío.

    Args:
        body: {ship_to, package_details: {weight, dimensions}, carrier_ids?}
        client: Cliente de ShipEngine (por defecto el global)

    Returns:
        Dict: {"rates": [...ordenadas por monto], "debug": {"usedFallback": bool}}

    Raises:
        ValidationException: Campos faltantes (400)
        ShippingAPIException: Error devuelto por ShipEngine (con su status y body)
    """
    settings = get_settings()
    ship_to = body.get("ship_to")
    package_details = body.get("package_details")
    if not ship_to or not package_details:
        raise ValidationException(
            "Missing required fields (ship_to, package_details).", field="ship_to", status_code=400
        )

    body_carriers = body.get("carrier_ids")
    carrier_ids = [
        carrier for carrier in (body_carriers if isinstance(body_carriers, list) and body_carriers else settings.shipengine_carrier_ids)
        if carrier
    ]
    if not carrier_ids:
        raise ValidationException("No carrier IDs provided for rate lookup.", field="carrier_ids", status_code=400)

    ship_from = settings.ship_from_address
    payload = build_estimate_payload(ship_to, ship_from, package_details, carrier_ids)
    missing = missing_estimate_fields(payload, ship_to, ship_from)
    if missing:
        raise ValidationException(
            f"Missing required fields for ShipEngine: {', '.join(missing)}", field=missing[0], status_code=400
        )

    client = client or get_shipengine_client()
    status, data = await client.estimate_rates(payload)
    if status >= 400:
        raise ShippingAPIException(
            "ShipEngine rate estimate failed", api_response_code=status, endpoint="/v1/rates/estimate", response_body=data
        )

    rates = extract_rates(data) or []
    used_fallback = False

    if not rates:
        if has_full_address(ship_to) and has_full_address(ship_from, require_phone=True):
            shipment_payload = build_shipment_payload(ship_to, ship_from, package_details, carrier_ids)
            status, fallback_data = await client.get_rates(shipment_payload)
            if status >= 400:
                raise ShippingAPIException(
                    "ShipEngine rates failed", api_response_code=status, endpoint="/v1/rates", response_body=fallback_data
                )
            rates = extract_rates(fallback_data) or []
            used_fallback = bool(rates)
        else:
            logger.info("ℹ️ Skipping /v1/rates fallback: missing full address fields")

    rates.sort(key=lambda rate: rate["amount"])
    if not used_fallback and rates:
        used_fallback = not (isinstance(data, dict) and isinstance(data.get("rate_estimates"), list))
    logger.info(f"📦 {len(rates)} shipping rates returned (fallback={used_fallback})")
    return {"rates": rates, "debug": {"usedFallback": used_fallback}}
