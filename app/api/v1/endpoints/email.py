"""
Endpoints de email: envío manual a clientes y tracking de aperturas/clicks.
"""

import base64
import logging
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from app.api.v1.schemas.ops_schemas import CustomerEmailRequest
from app.services.email_service import allowed_click_target, send_customer_email, track_click, track_open
from app.utils.error_handler import AppException

logger = logging.getLogger(__name__)

router = APIRouter()

# GIF transparente de 1x1
TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")


@router.post("/customer")
async def send_customer_email_endpoint(request: CustomerEmailRequest) -> JSONResponse:
    """
    Envía un correo a un cliente una sola vez por contenido.

    Returns:
        JSONResponse: {"success": true} o {"success": true, "skipped": true}
        si el mismo correo ya se envió
    """
    attachments = [attachment.model_dump(exclude_none=True) for attachment in request.attachments] or None
    result = await send_customer_email(
        request.to, request.subject, request.message, attachments=attachments, template=request.template
    )
    return JSONResponse(status_code=200, content=result)


@router.get("/open/{email_log_id}")
async def track_email_open(email_log_id: str) -> Response:
    """Pixel de apertura: marca el emailLog como abierto y devuelve un GIF."""
    try:
        await track_open(email_log_id)
    except AppException as e:
        # El cliente de correo siempre recibe la imagen
        logger.warning(f"⚠️ Could not track open for {email_log_id}: {e.message}")
    return Response(content=TRACKING_PIXEL, media_type="image/gif", headers={"Cache-Control": "no-store"})


@router.get("/click/{email_log_id}")
async def track_email_click(email_log_id: str, url: Optional[str] = Query(default=None)) -> Response:
    """
    Registra un click y redirige al destino.

    Solo se redirige a hosts de EMAIL_CLICK_ALLOWED_HOSTS; cualquier otro
    destino se registra sin URL y responde 204.
    """
    target = allowed_click_target(url)
    if url and not target:
        logger.warning(f"⚠️ Refused click redirect for {email_log_id} to {url}")

    try:
        await track_click(email_log_id, target)
    except AppException as e:
        logger.warning(f"⚠️ Could not track click for {email_log_id}: {e.message}")

    if target:
        return RedirectResponse(url=target, status_code=302)
    return Response(status_code=204)
