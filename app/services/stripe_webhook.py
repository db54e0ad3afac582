"""
Manejador de webhooks de Stripe.

Verifica la firma del evento, descarta duplicados y enruta cada tipo de
evento al servicio de sincronización de órdenes. Los errores internos se
registran y el webhook se confirma igualmente con 200 para evitar
reintentos agresivos de Stripe.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import stripe

from app.core.config import get_settings
from app.core.logging_config import log_webhook_received
from app.db.stripe_client import StripeGateway, get_stripe_gateway
from app.services import stripe_orders
from app.services.email_service import send_order_confirmation
from app.utils.error_handler import AppException, ErrorAggregator, WebhookSignatureException, error_message
from app.utils.retry_handler import get_handler

logger = logging.getLogger(__name__)

PROCESSED_EVENTS_CACHE_SIZE = 1000
MAX_TRACKED_ERRORS = 100


class StripeWebhookProcessor:
    """
    Procesador de eventos de Stripe.
    """

    def __init__(self, gateway: Optional[StripeGateway] = None):
        """Inicializa el procesador de webhooks."""
        self._gateway = gateway
        self.retry_handler = get_handler("stripe")
        self.error_aggregator = ErrorAggregator(max_errors=MAX_TRACKED_ERRORS)
        # Ids ya procesados en orden de llegada; se descarta el más antiguo
        self.processed_events: "OrderedDict[str, None]" = OrderedDict()

    @property
    def gateway(self) -> StripeGateway:
        if self._gateway is None:
            self._gateway = get_stripe_gateway()
        return self._gateway

    def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verifica la firma y construye el evento.

        Args:
            payload: Body crudo de la request
            signature: Header Stripe-Signature

        Returns:
            Dict: Evento de Stripe

        Raises:
            WebhookSignatureException: 500 sin secreto configurado, 400 si falta
                la firma o no es válida
        """
        secret = get_settings().STRIPE_WEBHOOK_SECRET
        if not secret:
            raise WebhookSignatureException("Missing STRIPE_WEBHOOK_SECRET", source="stripe", status_code=500)
        if not signature:
            raise WebhookSignatureException("Missing Stripe-Signature header", source="stripe", status_code=400)
        try:
            return StripeGateway.construct_event(payload, signature, secret)
        except (stripe.SignatureVerificationError, ValueError) as e:
            raise WebhookSignatureException(f"Webhook Error: {e}", source="stripe", status_code=400) from e

    async def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Procesa un evento ya verificado.

        Args:
            event: Evento de Stripe

        Returns:
            Dict: Resultado del procesamiento (success, skipped o error)
        """
        start_time = datetime.now(timezone.utc)
        event_id = event.get("id")
        event_type = event.get("type") or ""

        if event_id and event_id in self.processed_events:
            logger.info(f"Stripe event {event_id} already processed, skipping")
            return {"status": "skipped", "reason": "duplicate"}

        if event_id:
            self.processed_events[event_id] = None
            while len(self.processed_events) > PROCESSED_EVENTS_CACHE_SIZE:
                self.processed_events.popitem(last=False)

        log_webhook_received("stripe", event_type, event_id=event_id)

        try:
            result = await self._route_event(event)
            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
            logger.info(f"✅ Stripe event processed in {duration:.2f}s: {event_type}")
            return {"status": "success", "type": event_type, "eventId": event_id, "result": result}

        except Exception as e:
            # Un fallo interno no debe provocar reintentos de Stripe
            self.error_aggregator.add_error(e, {"event_type": event_type, "event_id": event_id})
            if event_id:
                self.processed_events.pop(event_id, None)
            logger.error(f"❌ Stripe event {event_type} ({event_id}) failed: {e}", exc_info=True)
            return {"status": "error", "type": event_type, "eventId": event_id, "error": error_message(e)}

    async def _route_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Enruta el evento a su manejador.

        Returns:
            Dict: Resultado del manejador o {"status": "ignored"}
        """
        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "checkout.session.expired": self._handle_checkout_expired,
            "checkout.session.async_payment_succeeded": self._handle_async_payment_succeeded,
            "checkout.session.async_payment_failed": self._handle_async_payment_failed,
            "payment_intent.payment_failed": self._handle_payment_failed,
            "payment_intent.canceled": self._handle_payment_canceled,
            "charge.refunded": self._handle_refund,
            "charge.refund.created": self._handle_refund,
            "charge.refund.updated": self._handle_refund,
        }

        handler = handlers.get(event.get("type"))
        if not handler:
            logger.debug(f"Ignoring Stripe event type: {event.get('type')}")
            return {"status": "ignored"}
        return await handler(event)

    @staticmethod
    def _object(event: Dict[str, Any]) -> Dict[str, Any]:
        return (event.get("data") or {}).get("object") or {}

    async def _handle_checkout_completed(self, event: Dict[str, Any]) -> Dict[str, Any]:
        session = self._object(event)
        payment_intent = None
        payment_intent_id = session.get("payment_intent")
        if isinstance(payment_intent_id, str) and payment_intent_id:
            try:
                payment_intent = await self.gateway.retrieve_payment_intent(payment_intent_id)
            except AppException as e:
                logger.warning(f"⚠️ Could not load payment intent {payment_intent_id}: {e}")

        line_items = await self.gateway.list_session_line_items(session["id"])
        result = await stripe_orders.upsert_order_from_session(
            session,
            payment_intent,
            line_items,
            event_type=event.get("type"),
            event_created=event.get("created"),
            gateway=self.gateway,
        )
        order_id = result.get("orderId")
        currency = result.get("currency")
        if order_id:
            await stripe_orders.append_order_event(
                order_id,
                event.get("type"),
                status=result.get("paymentStatus"),
                label="Checkout completed",
                message=f"Checkout session {session['id']} completed with status {session.get('payment_status') or 'unknown'}",
                amount=result.get("totalAmount"),
                currency=currency,
                stripe_event_id=event.get("id"),
                occurred_at=event.get("created"),
                metadata=result.get("metadata"),
            )
            await stripe_orders.mark_expired_cart_recovered(
                session["id"],
                order_id,
                status="recovered",
                label="Converted to order",
                message=f"Order {result.get('orderNumber') or order_id} created from checkout {session['id']}",
                amount=result.get("totalAmount"),
                currency=currency,
                stripe_event_id=event.get("id"),
                occurred_at=event.get("created"),
                metadata=result.get("metadata"),
            )

        if result.get("created") and order_id:
            try:
                await send_order_confirmation(result)
            except AppException as e:
                logger.warning(f"⚠️ Order confirmation email failed for {order_id}: {e}")

        return {"orderId": order_id, "paymentStatus": result.get("paymentStatus")}

    async def _handle_checkout_expired(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return await stripe_orders.handle_checkout_expired(
            self._object(event),
            stripe_event_id=event.get("id"),
            event_created=event.get("created"),
            gateway=self.gateway,
        )

    async def _handle_async_payment_succeeded(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return await stripe_orders.handle_checkout_async_payment(
            self._object(event),
            "success",
            stripe_event_id=event.get("id"),
            event_created=event.get("created"),
            gateway=self.gateway,
        )

    async def _handle_async_payment_failed(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return await stripe_orders.handle_checkout_async_payment(
            self._object(event),
            "failure",
            stripe_event_id=event.get("id"),
            event_created=event.get("created"),
            gateway=self.gateway,
        )

    async def _handle_payment_failed(self, event: Dict[str, Any]) -> Dict[str, Any]:
        updated = await stripe_orders.mark_payment_intent_failure(
            self._object(event),
            stripe_event_id=event.get("id"),
            event_created=event.get("created"),
            gateway=self.gateway,
        )
        return {"updated": updated}

    async def _handle_payment_canceled(self, event: Dict[str, Any]) -> Dict[str, Any]:
        updated = await stripe_orders.handle_payment_intent_canceled(
            self._object(event),
            stripe_event_id=event.get("id"),
            event_created=event.get("created"),
            gateway=self.gateway,
        )
        return {"updated": updated}

    async def _handle_refund(self, event: Dict[str, Any]) -> Dict[str, Any]:
        updated = await stripe_orders.handle_refund_event(event, gateway=self.gateway)
        return {"updated": updated}

    async def handle_request(self, payload: bytes, signature: Optional[str]) -> Tuple[int, Dict[str, Any]]:
        """
        Procesa una request completa del webhook.

        Returns:
            Tuple[int, Dict]: Código HTTP y body de respuesta
        """
        try:
            event = self.verify_event(payload, signature)
        except WebhookSignatureException as e:
            logger.warning(f"⚠️ Stripe webhook rejected: {e.message}")
            return e.status_code, {"error": e.message}

        result = await self.process_event(event)
        body: Dict[str, Any] = {"received": True}
        if result.get("status") == "error":
            body["hint"] = "internal error logged"
        return 200, body

    def get_metrics(self) -> Dict[str, Any]:
        """
        Obtiene métricas del procesador de webhooks.

        Returns:
            Dict: Métricas actuales
        """
        return {
            "processed_events_cache_size": len(self.processed_events),
            "error_summary": self.error_aggregator.get_summary(),
            "retry_metrics": self.retry_handler.get_metrics(),
        }


# Procesador global para webhooks de Stripe
_stripe_webhook_processor: Optional[StripeWebhookProcessor] = None


def get_stripe_webhook_processor() -> StripeWebhookProcessor:
    """Obtiene la instancia global del procesador."""
    global _stripe_webhook_processor
    if _stripe_webhook_processor is None:
        _stripe_webhook_processor = StripeWebhookProcessor()
    return _stripe_webhook_processor
