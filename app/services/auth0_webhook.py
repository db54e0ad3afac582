"""
Webhook de identidad (Auth0).

Auth0 firma el body crudo con HMAC-SHA256 (hex) en el header
x-auth0-signature. Los eventos verificados sincronizan el documento customer
correspondiente por email.
"""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from app.core.config import get_settings
from app.core.logging_config import log_webhook_received
from app.db.sanity_client import SanityClient, get_sanity_client
from app.utils.error_handler import ConfigurationException, ValidationException, WebhookSignatureException
from app.utils.id_utils import now_iso, to_str

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-auth0-signature"
DELETE_EVENTS = ("user.deleted", "user.delete")


def compute_signature(payload: bytes, secret: str) -> str:
    """HMAC-SHA256 hex del body crudo."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: Optional[str]) -> None:
    """
    Verifica la firma del webhook en tiempo constante.

    Raises:
        ConfigurationException: Sin AUTH0_WEBHOOK_SECRET configurado
        WebhookSignatureException: Firma ausente o inválida (401)
    """
    secret = get_settings().AUTH0_WEBHOOK_SECRET
    if not secret:
        raise ConfigurationException("Missing AUTH0_WEBHOOK_SECRET", setting="AUTH0_WEBHOOK_SECRET")
    if not signature:
        raise WebhookSignatureException("Missing signature", source="auth0", status_code=401)

    presented = signature.strip()
    if presented.lower().startswith("sha256="):
        presented = presented[len("sha256="):]
    expected = compute_signature(payload, secret)
    if not hmac.compare_digest(presented.lower().encode("utf-8"), expected.encode("utf-8")):
        raise WebhookSignatureException("Invalid signature", source="auth0", status_code=401)


def extract_user(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extrae los datos del usuario de un evento de Auth0.

    Acepta eventos {type, data: {object|user}} y payloads de post-login
    ({user: {...}} o el usuario en la raíz).
    """
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    user = data.get("object") or data.get("user") or payload.get("user") or payload
    if not isinstance(user, dict):
        user = {}

    email = to_str(user.get("email"))
    return {
        "email": email.lower() if email else None,
        "userId": to_str(user.get("user_id")) or to_str(user.get("sub")),
        "name": to_str(user.get("name")) or to_str(user.get("nickname")),
        "emailVerified": user.get("email_verified") if isinstance(user.get("email_verified"), bool) else None,
    }


def event_type_of(payload: Dict[str, Any]) -> str:
    return (to_str(payload.get("type")) or to_str(payload.get("event")) or "post-login").lower()


async def upsert_customer(user: Dict[str, Any], sanity: Optional[SanityClient] = None) -> Dict[str, Any]:
    """
    Crea o actualiza el customer con el email del usuario.

    Returns:
        Dict: {"customerId": id, "created": bool}
    """
    sanity = sanity or get_sanity_client()
    existing = await sanity.fetch(
        '*[_type == "customer" && lower(email) == $email][0]{_id, name}', {"email": user["email"]}
    )
    values: Dict[str, Any] = {"updatedAt": now_iso()}
    if user.get("userId"):
        values["userId"] = user["userId"]
    if user.get("emailVerified") is not None:
        values["emailVerified"] = user["emailVerified"]

    if existing and existing.get("_id"):
        patch = sanity.patch(existing["_id"]).set(values)
        if user.get("name") and not existing.get("name"):
            patch.set({"name": user["name"]})
        await patch.commit()
        return {"customerId": existing["_id"], "created": False}

    document = {"_type": "customer", "email": user["email"], **values}
    if user.get("name"):
        document["name"] = user["name"]
    response = await sanity.create(document)
    customer_id = SanityClient.created_id(response)
    logger.info(f"✅ Customer created from identity event: {user['email']}")
    return {"customerId": customer_id, "created": True}


async def detach_customer(user: Dict[str, Any], sanity: Optional[SanityClient] = None) -> Dict[str, Any]:
    """Quita el userId del customer de un usuario eliminado; el documento se conserva."""
    sanity = sanity or get_sanity_client()
    params = {"email": user.get("email") or "", "userId": user.get("userId") or ""}
    existing = await sanity.fetch(
        '*[_type == "customer" && ((defined(userId) && userId == $userId) || lower(email) == $email)][0]{_id}',
        params,
    )
    if not existing or not existing.get("_id"):
        return {"customerId": None, "detached": False}

    await sanity.patch(existing["_id"]).unset(["userId"]).set({"updatedAt": now_iso()}).commit()
    logger.info(f"🔓 Customer {existing['_id']} detached from deleted identity")
    return {"customerId": existing["_id"], "detached": True}


async def handle_auth0_request(
    payload: bytes, signature: Optional[str], sanity: Optional[SanityClient] = None
) -> Dict[str, Any]:
    """
    Procesa una request completa del webhook de Auth0.

    Args:
        payload: Body crudo
        signature: Header x-auth0-signature

    Returns:
        Dict: {"ok": True, "event": tipo, ...resultado}

    Raises:
        WebhookSignatureException: Firma inválida
        ValidationException: Body no JSON o usuario sin email
    """
    verify_signature(payload, signature)

    try:
        body = json.loads(payload.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationException("Invalid JSON body", field="body", status_code=400) from e
    if not isinstance(body, dict):
        raise ValidationException("Invalid JSON body", field="body", status_code=400)

    event_type = event_type_of(body)
    log_webhook_received("auth0", event_type)
    user = extract_user(body)

    if event_type in DELETE_EVENTS:
        if not user.get("email") and not user.get("userId"):
            return {"ok": True, "event": event_type, "note": "No user identifiers"}
        return {"ok": True, "event": event_type, **(await detach_customer(user, sanity=sanity))}

    if not user.get("email"):
        raise ValidationException("User email is required", field="email", status_code=400)
    return {"ok": True, "event": event_type, **(await upsert_customer(user, sanity=sanity))}
