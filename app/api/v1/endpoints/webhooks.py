"""
Endpoints para webhooks de Stripe, ShipEngine y Auth0.

Las firmas se verifican sobre el body crudo, por eso los handlers leen
request.body() en lugar de declarar un schema.
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from app.services.auth0_webhook import handle_auth0_request
from app.services.shipengine_webhook import check_token, handle_shipengine_event
from app.services.stripe_webhook import get_stripe_webhook_processor
from app.utils.error_handler import ValidationException

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe", status_code=status.HTTP_200_OK)
async def receive_stripe_webhook(request: Request) -> JSONResponse:
    """
    Recibe eventos de Stripe.

    Args:
        request: Request con header Stripe-Signature

    Returns:
        JSONResponse: 200 {"received": true} aunque el handler falle (el error
        queda en logs y se agrega "hint"); 400 si la firma falta o no es
        válida; 500 si el secreto no está configurado
    """
    payload = await request.body()
    status_code, body = await get_stripe_webhook_processor().handle_request(
        payload, request.headers.get("stripe-signature")
    )
    return JSONResponse(status_code=status_code, content=body)


@router.post("/shipengine", status_code=status.HTTP_200_OK)
async def receive_shipengine_webhook(request: Request) -> JSONResponse:
    """
    Recibe eventos de ShipEngine (tracking y labels).

    El token compartido llega en x-webhook-token o en ?token.

    Returns:
        JSONResponse: {"ok": true, "handled": <evento>, ...}
    """
    check_token(request.headers.get("x-webhook-token"), request.query_params.get("token"))

    raw = await request.body()
    try:
        payload: Dict[str, Any] = json.loads(raw or b"{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationException("Invalid JSON body", field="body", status_code=400) from e
    if not isinstance(payload, dict):
        raise ValidationException("Invalid JSON body", field="body", status_code=400)

    return JSONResponse(status_code=200, content=await handle_shipengine_event(payload))


@router.post("/auth0", status_code=status.HTTP_200_OK)
async def receive_auth0_webhook(request: Request) -> JSONResponse:
    """
    Recibe eventos de usuarios de Auth0 y sincroniza el customer.

    Returns:
        JSONResponse: {"ok": true, "event": <tipo>, ...}; 401 con firma inválida
    """
    payload = await request.body()
    result = await handle_auth0_request(payload, request.headers.get("x-auth0-signature"))
    return JSONResponse(status_code=200, content=result)
