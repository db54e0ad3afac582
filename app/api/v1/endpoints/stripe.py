"""
Endpoints de mantenimiento de órdenes de Stripe.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.api.v1.schemas.ops_schemas import StripeReprocessRequest
from app.services.stripe_orders import reprocess_stripe_session

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/reprocess")
async def reprocess_order(request: StripeReprocessRequest) -> JSONResponse:
    """
    Vuelve a sincronizar una orden a partir de su checkout session.

    Args:
        request: {id: cs_/pi_/ch_, autoFulfill}

    Returns:
        JSONResponse: {"ok": true, orderId, invoiceId, ...}; 400 con id
        faltante o inválido y 404 si Stripe no tiene la sesión
    """
    logger.info(f"🔄 Reprocess requested for {request.id}")
    result = await reprocess_stripe_session(request.id, auto_fulfill=request.autoFulfill)
    return JSONResponse(status_code=200, content={"ok": True, **result})
