"""
Manejador de webhooks de ShipEngine.

Guarda en Sanity el estado de tracking y de etiquetas. Los eventos no
reconocidos se almacenan como documentos shipengineEvent para auditoría.
"""

import hmac
import logging
import re
import time
from typing import Any, Dict, Optional

from app.core.config import get_settings
from app.core.logging_config import log_webhook_received
from app.db.sanity_client import SanityClient, get_sanity_client
from app.utils.error_handler import WebhookSignatureException
from app.utils.id_utils import new_key, now_iso, to_str

logger = logging.getLogger(__name__)

_ID_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_id_part(value: str) -> str:
    return _ID_UNSAFE_RE.sub("-", value).strip("-")


def check_token(header_token: Optional[str], query_token: Optional[str]) -> None:
    """
    Verifica el token compartido del webhook.

    Sin SHIPENGINE_WEBHOOK_TOKEN configurado se aceptan todas las requests.

    Raises:
        WebhookSignatureException: Si el token no coincide (401)
    """
    expected = get_settings().SHIPENGINE_WEBHOOK_TOKEN
    if not expected:
        return
    for candidate in (header_token, query_token):
        if candidate and hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8")):
            return
    raise WebhookSignatureException("Unauthorized (bad webhook token)", source="shipengine", status_code=401)


async def upsert_tracking(
    tracking_number: str, status: Dict[str, Any], sanity: Optional[SanityClient] = None
) -> Dict[str, Any]:
    """
    Actualiza trackingStatus del shipment u orden con ese número de tracking.

    Si no existe ninguno se crea un shipment liviano para no perder el dato.
    """
    sanity = sanity or get_sanity_client()
    hit = await sanity.fetch(
        '*[(_type == "shipment" || _type == "order") && trackingNumber == $tn][0]{_id}', {"tn": tracking_number}
    )
    if hit and hit.get("_id"):
        await sanity.patch(hit["_id"]).set({"trackingStatus": status, "trackingUpdatedAt": now_iso()}).commit()
        return {"updatedId": hit["_id"]}

    document_id = f"shipment.{_safe_id_part(tracking_number)}"
    await sanity.create_if_not_exists(
        {
            "_id": document_id,
            "_type": "shipment",
            "trackingNumber": tracking_number,
            "trackingStatus": status,
            "trackingUpdatedAt": now_iso(),
        }
    )
    return {"createdId": document_id}


async def upsert_label(label_id: str, data: Dict[str, Any], sanity: Optional[SanityClient] = None) -> Dict[str, Any]:
    """Crea o actualiza el documento label de una etiqueta de ShipEngine."""
    sanity = sanity or get_sanity_client()
    hit = await sanity.fetch('*[_type == "label" && labelId == $id][0]{_id}', {"id": label_id})
    if hit and hit.get("_id"):
        await sanity.patch(hit["_id"]).set(dict(data)).commit()
        return {"updatedId": hit["_id"]}

    document_id = f"label.{_safe_id_part(label_id)}"
    await sanity.create_if_not_exists({"_id": document_id, "_type": "label", "labelId": label_id, **data})
    return {"createdId": document_id}


async def handle_shipengine_event(payload: Dict[str, Any], sanity: Optional[SanityClient] = None) -> Dict[str, Any]:
    """
    Procesa un evento de ShipEngine.

    Args:
        payload: Body del webhook ({event, data, ...})

    Returns:
        Dict: {"ok": True, "handled": <evento>, ...}
    """
    event_name = (to_str(payload.get("event")) or "").lower()
    data = payload.get("data") if isinstance(payload.get("data"), dict) else None
    log_webhook_received("shipengine", event_name or "unknown")
    result: Dict[str, Any] = {"ok": True, "handled": event_name or "unknown"}

    if "tracking" in event_name:
        tracking_number = to_str((data or {}).get("tracking_number")) or to_str(payload.get("tracking_number"))
        if tracking_number:
            result["tracking"] = await upsert_tracking(tracking_number, data or payload, sanity=sanity)
        else:
            result["note"] = "No tracking number"
    elif "label" in event_name and "created" in event_name:
        label_id = to_str((data or {}).get("label_id")) or to_str(payload.get("label_id"))
        if label_id:
            result["label"] = await upsert_label(label_id, data or payload, sanity=sanity)
        else:
            result["note"] = "No label id"
    elif "label" in event_name and "void" in event_name:
        label_id = to_str((data or {}).get("label_id")) or to_str(payload.get("label_id"))
        if label_id:
            result["label"] = await upsert_label(label_id, {"voided": True, **(data or {})}, sanity=sanity)
        else:
            result["note"] = "No label id"
    else:
        sanity = sanity or get_sanity_client()
        await sanity.create_if_not_exists(
            {
                "_id": f"shipengine.event.{int(time.time() * 1000)}.{new_key()}",
                "_type": "shipengineEvent",
                "event": event_name or None,
                "payload": payload,
                "receivedAt": now_iso(),
            }
        )
        result["note"] = "Stored generic shipengineEvent doc"

    logger.info(f"🚚 ShipEngine event handled: {result['handled']}")
    return result
