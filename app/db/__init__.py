"""
Clients for the external systems the backend reads and writes.

- SanityClient: GROQ queries and transactional mutations on the CMS
- StripeGateway: Stripe SDK calls routed through the retry handler
- ShipEngineClient: rate quotes
"""

from app.db.sanity_client import (
    Patch,
    SanityClient,
    Transaction,
    close_sanity_client,
    get_sanity_client,
    test_sanity_connection,
)
from app.db.shipengine_client import ShipEngineClient, close_shipengine_client, get_shipengine_client
from app.db.stripe_client import StripeGateway, get_stripe_gateway, reset_stripe_gateway

__all__ = [
    # Sanity
    "Patch",
    "SanityClient",
    "Transaction",
    "get_sanity_client",
    "close_sanity_client",
    "test_sanity_connection",
    # Stripe
    "StripeGateway",
    "get_stripe_gateway",
    "reset_stripe_gateway",
    # ShipEngine
    "ShipEngineClient",
    "get_shipengine_client",
    "close_shipengine_client",
]
