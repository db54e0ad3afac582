"""
Servicio de email transaccional con Resend.

El SDK de Resend es síncrono; cada envío corre en un thread a través del
retry handler de Resend. Los correos a clientes se registran en documentos
emailLog de Sanity, lo que evita reenvíos del mismo mensaje cuando el
endpoint se invoca más de una vez.
"""

import hashlib
import html as html_lib
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import resend
from resend.exceptions import ResendError

from app.core.config import get_settings
from app.db.sanity_client import SanityClient, get_sanity_client
from app.utils.error_handler import (
    ConfigurationException,
    EmailDeliveryException,
    ExternalAPIException,
    ValidationException,
    error_message,
)
from app.utils.id_utils import now_iso, to_str
from app.utils.retry_handler import RESEND_RETRY_HANDLER

logger = logging.getLogger(__name__)

EMAIL_LOG_TYPE = "emailLog"
SKIP_STATUSES = ("sent", "queued")


def missing_email_fields(to: Any, from_: Any, subject: Any) -> List[str]:
    """Campos obligatorios vacíos de un correo (to, from, subject)."""
    missing = []
    if not to_str(to):
        missing.append("to")
    if not to_str(from_):
        missing.append("from")
    if not to_str(subject):
        missing.append("subject")
    return missing


def _configure_resend() -> None:
    settings = get_settings()
    if not settings.RESEND_API_KEY:
        raise ConfigurationException("Missing RESEND_API_KEY", setting="RESEND_API_KEY")
    resend.api_key = settings.RESEND_API_KEY


def _deliver(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Llamada síncrona al SDK; los errores se convierten a EmailDeliveryException."""
    try:
        response = resend.Emails.send(payload)
    except ResendError as e:
        raise EmailDeliveryException(f"Resend API error: {e}", endpoint="emails.send") from e
    if not isinstance(response, dict) or not response.get("id"):
        raise EmailDeliveryException(f"Resend API error: {response}", endpoint="emails.send")
    return response


async def send_email(
    to: Any,
    subject: Optional[str],
    html: Optional[str] = None,
    text: Optional[str] = None,
    from_: Optional[str] = None,
    attachments: Optional[List[Dict[str, Any]]] = None,
    reply_to: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Envía un correo con Resend.

    Args:
        to: Destinatario o lista de destinatarios
        subject: Asunto
        html: Cuerpo HTML
        text: Cuerpo de texto plano
        from_: Remitente (por defecto RESEND_FROM)
        attachments: Adjuntos {filename, content}
        reply_to: Dirección de respuesta

    Returns:
        Dict: {"provider": "resend", "id": ..., "status": "sent"}

    Raises:
        ValidationException: Si faltan to, from o subject
        ConfigurationException: Si falta RESEND_API_KEY
        EmailDeliveryException: Si Resend rechaza el envío
    """
    sender = to_str(from_) or get_settings().RESEND_FROM
    recipients = [item for item in (to if isinstance(to, list) else [to]) if to_str(item)]
    missing = missing_email_fields(recipients[0] if recipients else None, sender, subject)
    if missing:
        raise ValidationException(f"Missing email fields: {', '.join(missing)}", field=missing[0], status_code=400)

    _configure_resend()
    payload: Dict[str, Any] = {"from": sender, "to": recipients, "subject": subject.strip()}
    if html:
        payload["html"] = html
    if text:
        payload["text"] = text
    if reply_to:
        payload["reply_to"] = reply_to
    valid_attachments = [
        {"filename": item["filename"], "content": item["content"]}
        for item in attachments or []
        if isinstance(item, dict) and to_str(item.get("filename")) and to_str(item.get("content"))
    ]
    if valid_attachments:
        payload["attachments"] = valid_attachments

    response = await RESEND_RETRY_HANDLER.execute(_deliver, payload, context={"operation": "emails.send"})
    logger.info(f"📧 Email sent to {', '.join(recipients)}: {subject}")
    return {"provider": "resend", "id": response.get("id"), "status": "sent"}


async def send_bulk(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Envía varios correos de forma secuencial.

    Un fallo individual queda registrado en su resultado y no detiene el resto.

    Args:
        messages: Lista de kwargs para send_email

    Returns:
        List[Dict]: Resultado por mensaje (status sent o failed)
    """
    results = []
    for message in messages:
        try:
            results.append(await send_email(**message))
        except (ValidationException, ExternalAPIException) as e:
            logger.warning(f"⚠️ Bulk email to {message.get('to')} failed: {e}")
            results.append({"provider": "resend", "status": "failed", "error": error_message(e)})
    return results


# === IDEMPOTENCIA ===


def email_context_key(to: str, subject: str, message: str, attachments: Optional[List[Any]] = None) -> str:
    """Clave de contexto de un correo a cliente (destinatario + hash del contenido)."""
    payload = f"{subject}|{message}|{json.dumps(attachments or [], separators=(',', ':'))}"
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"sendCustomerEmail:{to.strip().lower()}:{digest}"


def email_log_id(context_key: str) -> str:
    """Id determinista del emailLog para una clave de contexto."""
    return f"emailLog.{hashlib.sha256(context_key.encode('utf-8')).hexdigest()[:32]}"


async def reserve_email_log(
    context_key: str, to: str, subject: str, sanity: Optional[SanityClient] = None
) -> Dict[str, Any]:
    """
    Reserva el emailLog de un correo.

    Returns:
        Dict: logId y shouldSend (False si el correo ya fue enviado o está en cola)
    """
    sanity = sanity or get_sanity_client()
    log_id = email_log_id(context_key)
    existing = await sanity.get_document(log_id)
    if existing and existing.get("status") in SKIP_STATUSES:
        logger.info(f"ℹ️ Email {context_key} already {existing.get('status')}, skipping")
        return {"logId": log_id, "shouldSend": False}

    if existing:
        await sanity.patch(log_id).set({"status": "queued", "updatedAt": now_iso()}).unset(["error"]).commit()
    else:
        await sanity.create_if_not_exists(
            {
                "_id": log_id,
                "_type": EMAIL_LOG_TYPE,
                "contextKey": context_key,
                "to": to,
                "subject": subject,
                "status": "queued",
                "createdAt": now_iso(),
            }
        )
    return {"logId": log_id, "shouldSend": True}


async def _update_email_log(
    log_id: str,
    values: Dict[str, Any],
    append: Optional[Dict[str, Any]] = None,
    sanity: Optional[SanityClient] = None,
) -> None:
    sanity = sanity or get_sanity_client()
    patch = sanity.patch(log_id).set(values)
    if append:
        patch = patch.set_if_missing({append["path"]: []}).append(append["path"], append["items"])
    try:
        await patch.commit()
    except ExternalAPIException as e:
        logger.warning(f"⚠️ Failed to update email log {log_id}: {e}")


async def send_customer_email(
    to: Optional[str],
    subject: Optional[str],
    message: Optional[str],
    attachments: Optional[List[Dict[str, Any]]] = None,
    template: Optional[str] = None,
    sanity: Optional[SanityClient] = None,
) -> Dict[str, Any]:
    """
    Envía un correo manual a un cliente una sola vez por contenido.

    Args:
        to: Destinatario
        subject: Asunto
        message: Mensaje en texto; los saltos de línea se convierten a <br />
        attachments: Adjuntos {filename, content (base64)}
        template: Nombre de plantilla informativo

    Returns:
        Dict: {"success": True} o {"success": True, "skipped": True}

    Raises:
        ValidationException: Si falta destinatario, asunto o mensaje (400)
        EmailDeliveryException: Si el envío falla
    """
    to = to_str(to)
    subject = to_str(subject)
    if not to:
        raise ValidationException("Recipient is required", field="to", status_code=400)
    if not subject:
        raise ValidationException("Subject is required", field="subject", status_code=400)
    if not message:
        raise ValidationException("Message body is required", field="message", status_code=400)
    missing = missing_email_fields(to, get_settings().RESEND_FROM, subject)
    if missing:
        raise ValidationException(f"Missing email fields: {', '.join(missing)}", field=missing[0], status_code=400)

    body = "<br />".join(html_lib.escape(line.strip()) or "<br />" for line in message.split("\n"))
    label = html_lib.escape(template or "custom")
    html = f'<p>{body}</p><p style="font-size:12px;color:#94a3b8;">Template: {label}</p>'

    context_key = email_context_key(to, subject, message, attachments)
    reservation = await reserve_email_log(context_key, to, subject, sanity=sanity)
    if not reservation["shouldSend"]:
        return {"success": True, "skipped": True}

    try:
        result = await send_email(to, subject, html=html, attachments=attachments)
    except Exception as e:
        # Un log en queued bloquearía los reintentos del mismo correo
        await _update_email_log(
            reservation["logId"], {"status": "failed", "error": error_message(e), "updatedAt": now_iso()}, sanity=sanity
        )
        raise

    await _update_email_log(
        reservation["logId"],
        {"status": "sent", "sentAt": now_iso(), "resendId": result.get("id")},
        sanity=sanity,
    )
    return {"success": True}


async def track_open(log_id: str, sanity: Optional[SanityClient] = None) -> None:
    """Marca un emailLog como abierto."""
    await _update_email_log(log_id, {"status": "opened", "openedAt": now_iso()}, sanity=sanity)


def allowed_click_target(url: Optional[str]) -> Optional[str]:
    """
    Valida el destino de un click trackeado.

    Returns:
        Optional[str]: La URL si es http(s) y su host (o un dominio padre)
        está en EMAIL_CLICK_ALLOWED_HOSTS; None en otro caso
    """
    if not url:
        return None
    try:
        parts = urlsplit(url.strip())
        host = (parts.hostname or "").lower()
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not host:
        return None
    for allowed in get_settings().email_click_allowed_hosts:
        if host == allowed or host.endswith(f".{allowed}"):
            return url.strip()
    return None


async def track_click(log_id: str, url: Optional[str] = None, sanity: Optional[SanityClient] = None) -> None:
    """Marca un emailLog como clickeado y guarda la URL en clickEvents."""
    append = {"path": "clickEvents", "items": [{"url": url, "timestamp": now_iso()}]} if url else None
    await _update_email_log(log_id, {"status": "clicked", "clickedAt": now_iso()}, append=append, sanity=sanity)


# === CONFIRMACIÓN DE ORDEN ===


def _money(value: Any) -> str:
    return f"${value:.2f}" if isinstance(value, (int, float)) else ""


def render_order_confirmation(order: Dict[str, Any]) -> Dict[str, str]:
    """
    Genera asunto, HTML y texto del correo de confirmación de orden.

    Args:
        order: Resultado de upsert_order_from_session (orderNumber, customerName,
            cart, totales, shippingAddress)
    """
    order_number = order.get("orderNumber") or ""
    name = order.get("customerName") or "there"
    rows = []
    text_lines = []
    for item in order.get("cart") or []:
        quantity = item.get("quantity") or 1
        label = html_lib.escape(str(item.get("name") or item.get("sku") or "Item"))
        rows.append(f"<tr><td>{label}</td><td>{quantity}</td><td>{_money(item.get('lineTotal') or item.get('price'))}</td></tr>")
        text_lines.append(f"- {item.get('name') or item.get('sku') or 'Item'} x{quantity}")

    totals = [
        ("Subtotal", order.get("amountSubtotal")),
        ("Shipping", order.get("amountShipping")),
        ("Tax", order.get("amountTax")),
        ("Total", order.get("totalAmount")),
    ]
    totals_html = "".join(f"<p>{label}: {_money(value)}</p>" for label, value in totals if value is not None)
    address = order.get("shippingAddress") or {}
    address_lines = [
        address.get("name"),
        address.get("addressLine1"),
        address.get("addressLine2"),
        " ".join(part for part in [address.get("city"), address.get("state"), address.get("postalCode")] if part),
        address.get("country"),
    ]
    address_html = "<br />".join(html_lib.escape(line) for line in address_lines if line)

    html = (
        f"<h1>Thanks for your order, {html_lib.escape(name)}!</h1>"
        f"<p>Order <strong>{html_lib.escape(order_number)}</strong> has been received.</p>"
        f"<table><tr><th>Item</th><th>Qty</th><th>Amount</th></tr>{''.join(rows)}</table>"
        f"{totals_html}"
        + (f"<h3>Shipping to</h3><p>{address_html}</p>" if address_html else "")
    )
    text = "\n".join(
        [f"Thanks for your order, {name}!", f"Order {order_number} has been received.", *text_lines]
        + [f"{label}: {_money(value)}" for label, value in totals if value is not None]
    )
    return {"subject": f"Order confirmation {order_number}".strip(), "html": html, "text": text}


async def send_order_confirmation(order: Dict[str, Any], sanity: Optional[SanityClient] = None) -> bool:
    """
    Envía la confirmación de una orden recién creada y marca confirmationEmailSent.

    Returns:
        bool: True si se envió
    """
    to = to_str(order.get("customerEmail"))
    if not to or not get_settings().RESEND_API_KEY:
        return False
    content = render_order_confirmation(order)
    await send_email(to, content["subject"], html=content["html"], text=content["text"])
    if order.get("orderId"):
        sanity = sanity or get_sanity_client()
        await sanity.patch(order["orderId"]).set({"confirmationEmailSent": True}).commit()
    return True
