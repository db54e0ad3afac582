"""
ShipEngine HTTP client.

Rate requests return the upstream status together with the decoded body so the
rate service can forward ShipEngine validation errors to its caller unchanged.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Tuple

import aiohttp
from aiohttp import ClientTimeout

from app.core.config import get_settings
from app.core.logging_config import log_api_call
from app.db.sanity_client import read_response_body
from app.utils.error_handler import ConfigurationException, ShippingAPIException
from app.utils.retry_handler import SHIPENGINE_RETRY_HANDLER

logger = logging.getLogger(__name__)


class ShipEngineClient:
    """
    Client for the ShipEngine v1 REST API.
    """

    def __init__(self, api_key: Optional[str] = None, api_url: Optional[str] = None):
        settings = get_settings()
        self.api_key = api_key or settings.SHIPENGINE_API_KEY
        self.api_url = (api_url or settings.SHIPENGINE_API_URL).rstrip("/")
        self.session: Optional[aiohttp.ClientSession] = None

        if not self.api_key:
            raise ConfigurationException(
                "Missing SHIPENGINE_API_KEY environment variable", setting="SHIPENGINE_API_KEY"
            )

    async def _ensure_session(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=30, connect=10),
                connector=aiohttp.TCPConnector(limit=20, limit_per_host=10),
                headers={"Content-Type": "application/json", "API-Key": self.api_key},
            )

    async def close(self):
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def _post(self, path: str, payload: Dict[str, Any]) -> Tuple[int, Any]:
        """
        POST a JSON payload.

        Returns:
            Tuple[int, Any]: HTTP status and decoded body

        Raises:
            ShippingAPIException: On network errors
        """
        await self._ensure_session()
        started = time.time()
        try:
            async with self.session.post(f"{self.api_url}{path}", json=payload) as response:
                data = await read_response_body(response)
                log_api_call("POST", path, response.status, time.time() - started)
                return response.status, data
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ ShipEngine request failed: {path} - {e}")
            raise ShippingAPIException(f"ShipEngine network error: {str(e)}", endpoint=path) from e

    async def estimate_rates(self, payload: Dict[str, Any]) -> Tuple[int, Any]:
        """Quote rates with the flat /v1/rates/estimate payload."""
        return await SHIPENGINE_RETRY_HANDLER.execute(self._post, "/v1/rates/estimate", payload)

    async def get_rates(self, payload: Dict[str, Any]) -> Tuple[int, Any]:
        """Quote rates with the shipment-style /v1/rates payload."""
        return await SHIPENGINE_RETRY_HANDLER.execute(self._post, "/v1/rates", payload)

    def __repr__(self):
        return f"ShipEngineClient(api_url='{self.api_url}', initialized={self.session is not None})"


# Global client instance
_shipengine_client: Optional[ShipEngineClient] = None


def get_shipengine_client() -> ShipEngineClient:
    """
    Obtiene la instancia global del cliente de ShipEngine.

    Raises:
        ConfigurationException: Si falta SHIPENGINE_API_KEY
    """
    global _shipengine_client
    if _shipengine_client is None:
        _shipengine_client = ShipEngineClient()
    return _shipengine_client


async def close_shipengine_client() -> None:
    """Cierra la sesión del cliente global."""
    global _shipengine_client
    if _shipengine_client is not None:
        await _shipengine_client.close()
        _shipengine_client = None
