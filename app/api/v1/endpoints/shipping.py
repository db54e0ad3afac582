"""
Endpoint de cotización de envíos con ShipEngine.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body
from fastapi.responses import JSONResponse

from app.services.shipping_rates import get_shipping_rates
from app.utils.error_handler import ShippingAPIException

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/rates")
async def shipping_rates(body: Optional[Dict[str, Any]] = Body(default=None)) -> JSONResponse:
    """
    Cotiza tarifas para un destino y un paquete.

    Args:
        body: {ship_to, package_details: {weight, dimensions}, carrier_ids?}

    Returns:
        JSONResponse: {"rates": [...], "debug": {"usedFallback": bool}}; los
        errores de ShipEngine se reenvían con su status y body
    """
    try:
        result = await get_shipping_rates(body or {})
    except ShippingAPIException as e:
        logger.warning(f"⚠️ ShipEngine rejected rate request: {e.message}")
        return JSONResponse(
            status_code=e.api_response_code or 502,
            content={"error": e.message, "details": e.response_body},
        )
    return JSONResponse(status_code=200, content=result)
