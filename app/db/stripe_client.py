"""
Stripe gateway.

Thin async facade over the synchronous stripe SDK. Calls run in a worker thread
through the Stripe retry handler, SDK errors are converted to StripeAPIException
and every result is returned as plain dicts and lists.
"""

import logging
from typing import Any, Dict, List, Optional

import stripe

from app.core.config import get_settings
from app.utils.error_handler import ConfigurationException, StripeAPIException
from app.utils.retry_handler import STRIPE_RETRY_HANDLER

logger = logging.getLogger(__name__)


def to_plain(value: Any) -> Any:
    """Recursively convert StripeObject instances into dicts and lists."""
    if isinstance(value, dict):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    return value


def _invoke(operation: str, func, *args, **kwargs) -> Any:
    """
    Call an SDK function and translate its errors.

    Raises:
        StripeAPIException: For any stripe.StripeError
    """
    try:
        return to_plain(func(*args, **kwargs))
    except stripe.RateLimitError as e:
        raise StripeAPIException(
            f"Stripe rate limit on {operation}: {e.user_message or str(e)}",
            api_response_code=429,
            endpoint=operation,
            rate_limited=True,
            retry_after=2,
        ) from e
    except stripe.StripeError as e:
        status = getattr(e, "http_status", None)
        raise StripeAPIException(
            f"Stripe {operation} failed: {e.user_message or str(e)}",
            api_response_code=status,
            endpoint=operation,
            response_body=getattr(e, "json_body", None),
            details={"stripe_code": getattr(e, "code", None)},
        ) from e


class StripeGateway:
    """
    Async access to the Stripe objects used by order synchronization.
    """

    def __init__(self, api_key: str, api_version: Optional[str] = None):
        if not api_key:
            raise ConfigurationException("Missing STRIPE_SECRET_KEY", setting="STRIPE_SECRET_KEY")
        stripe.api_key = api_key
        if api_version:
            stripe.api_version = api_version
        self.retry_handler = STRIPE_RETRY_HANDLER

    async def _call(self, operation: str, func, *args, **kwargs) -> Any:
        return await self.retry_handler.execute(
            _invoke, operation, func, *args, context={"operation": operation}, **kwargs
        )

    # === CHECKOUT ===

    async def retrieve_checkout_session(
        self, session_id: str, expand: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Retrieve a checkout session, optionally expanding nested objects."""
        return await self._call(
            "checkout.sessions.retrieve", stripe.checkout.Session.retrieve, session_id, expand=expand or []
        )

    async def list_checkout_sessions(self, **params) -> Dict[str, Any]:
        """List checkout sessions (e.g. by payment_intent)."""
        return await self._call("checkout.sessions.list", stripe.checkout.Session.list, **params)

    async def list_session_line_items(self, session_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """
        List every line item of a checkout session with price and product expanded.
        """
        items: List[Dict[str, Any]] = []
        starting_after = None
        while True:
            params: Dict[str, Any] = {"limit": limit, "expand": ["data.price.product"]}
            if starting_after:
                params["starting_after"] = starting_after
            page = await self._call(
                "checkout.sessions.listLineItems", stripe.checkout.Session.list_line_items, session_id, **params
            )
            data = page.get("data") or []
            items.extend(data)
            if not page.get("has_more") or not data:
                break
            starting_after = data[-1].get("id")
        return items

    # === PAYMENTS ===

    async def retrieve_payment_intent(
        self, payment_intent_id: str, expand: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        return await self._call(
            "paymentIntents.retrieve", stripe.PaymentIntent.retrieve, payment_intent_id, expand=expand or []
        )

    async def retrieve_charge(self, charge_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        return await self._call("charges.retrieve", stripe.Charge.retrieve, charge_id, expand=expand or [])

    async def list_charges(self, **params) -> Dict[str, Any]:
        return await self._call("charges.list", stripe.Charge.list, **params)

    async def list_refunds(self, **params) -> Dict[str, Any]:
        return await self._call("refunds.list", stripe.Refund.list, **params)

    async def list_events(self, **params) -> Dict[str, Any]:
        return await self._call("events.list", stripe.Event.list, **params)

    async def retrieve_shipping_rate(self, shipping_rate_id: str) -> Dict[str, Any]:
        return await self._call("shippingRates.retrieve", stripe.ShippingRate.retrieve, shipping_rate_id)

    # === WEBHOOKS ===

    @staticmethod
    def construct_event(payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
        """
        Verify a webhook signature and parse the event.

        Raises:
            stripe.SignatureVerificationError: Invalid signature
            ValueError: Invalid payload
        """
        return to_plain(stripe.Webhook.construct_event(payload, signature, secret))

    def __repr__(self):
        return f"StripeGateway(api_version='{stripe.api_version}')"


# Global gateway instance
_stripe_gateway: Optional[StripeGateway] = None


def get_stripe_gateway() -> StripeGateway:
    """
    Obtiene la instancia global del gateway de Stripe.

    Raises:
        ConfigurationException: Si falta STRIPE_SECRET_KEY
    """
    global _stripe_gateway
    if _stripe_gateway is None:
        settings = get_settings()
        _stripe_gateway = StripeGateway(settings.STRIPE_SECRET_KEY or "", settings.STRIPE_API_VERSION)
        logger.info("✅ Stripe gateway configured")
    return _stripe_gateway


def reset_stripe_gateway() -> None:
    """Descarta la instancia global (tests y recarga de configuración)."""
    global _stripe_gateway
    _stripe_gateway = None
