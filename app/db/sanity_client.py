"""
Sanity HTTP API client with query, document and mutation support.

This module provides the CMS access layer used by every service:
GROQ queries, document reads, and mutations built through the Patch and
Transaction helpers. Connection management, rate limiting and retries
follow the same pattern as the other HTTP clients of the application.
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Union

import aiohttp
from aiohttp import ClientTimeout

from app.core.config import get_settings
from app.core.logging_config import log_api_call
from app.utils.error_handler import CMSAPIException, ConfigurationException

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 2
MAX_RETRY_AFTER = 60


def parse_retry_after(value: Optional[str]) -> int:
    """
    Seconds to wait from a Retry-After header.

    Accepts delta-seconds or an HTTP-date. Missing or unparseable values fall
    back to DEFAULT_RETRY_AFTER; the wait never exceeds MAX_RETRY_AFTER.
    """
    value = (value or "").strip()
    if not value:
        return DEFAULT_RETRY_AFTER
    if value.isdigit():
        return min(int(value), MAX_RETRY_AFTER)
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return DEFAULT_RETRY_AFTER
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    seconds = (retry_at - datetime.now(timezone.utc)).total_seconds()
    return min(max(int(round(seconds)), 0), MAX_RETRY_AFTER)


async def read_response_body(response: aiohttp.ClientResponse) -> Any:
    """
    Decoded JSON body of a response.

    Empty bodies return None; anything that is not JSON (e.g. an HTML error
    page from a proxy) comes back as text.
    """
    text = await response.text(errors="replace")
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


class Patch:
    """
    Builder for a single document patch.

    Operations are accumulated and sent as one mutation on commit, e.g.::

        await client.patch(order_id).set({"status": "paid"}).unset(["customer"]).commit()
    """

    def __init__(self, document_id: str, client: Optional["SanityClient"] = None):
        self.document_id = document_id
        self.client = client
        self.operations: Dict[str, Any] = {}
        self._inserts: List[Dict[str, Any]] = []

    def set(self, values: Dict[str, Any]) -> "Patch":
        """Set fields, overwriting existing values."""
        if values:
            self.operations.setdefault("set", {}).update(values)
        return self

    def set_if_missing(self, values: Dict[str, Any]) -> "Patch":
        """Set fields only where they are not already defined."""
        if values:
            self.operations.setdefault("setIfMissing", {}).update(values)
        return self

    def unset(self, paths: List[str]) -> "Patch":
        """Remove fields."""
        if paths:
            existing = self.operations.setdefault("unset", [])
            existing.extend(path for path in paths if path not in existing)
        return self

    def inc(self, values: Dict[str, Union[int, float]]) -> "Patch":
        """Increment numeric fields."""
        if values:
            self.operations.setdefault("inc", {}).update(values)
        return self

    def insert(self, position: str, selector: str, items: List[Any]) -> "Patch":
        """
        Insert items into an array relative to a selector.

        Args:
            position: "before", "after" or "replace"
            selector: Array path selector such as "orderEvents[-1]"
            items: Items to insert
        """
        if position not in ("before", "after", "replace"):
            raise ValueError(f"Invalid insert position: {position}")
        if items:
            self._inserts.append({position: selector, "items": list(items)})
        return self

    def append(self, path: str, items: List[Any]) -> "Patch":
        """Append items at the end of an array field."""
        return self.insert("after", f"{path}[-1]", items)

    def is_empty(self) -> bool:
        """Check whether the patch has any operation."""
        return not self.operations and not self._inserts

    def to_mutations(self) -> List[Dict[str, Any]]:
        """
        Serialize to Sanity mutations.

        A patch can only carry one insert, so each additional insert becomes its
        own patch mutation on the same document, applied in order.
        """
        if self.is_empty():
            return []
        mutations: List[Dict[str, Any]] = []
        first = {"id": self.document_id, **self.operations}
        if self._inserts:
            first["insert"] = self._inserts[0]
        mutations.append({"patch": first})
        for extra in self._inserts[1:]:
            mutations.append({"patch": {"id": self.document_id, "insert": extra}})
        return mutations

    async def commit(self, auto_generate_array_keys: bool = True) -> Dict[str, Any]:
        """
        Send the patch.

        Returns:
            Dict: Mutation response (transactionId, results)
        """
        if self.client is None:
            raise CMSAPIException("Patch is not bound to a client")
        if self.is_empty():
            return {"transactionId": None, "results": []}
        return await self.client.mutate(self.to_mutations(), auto_generate_array_keys=auto_generate_array_keys)


class Transaction:
    """
    Builder for several mutations committed atomically in one request.
    """

    def __init__(self, client: Optional["SanityClient"] = None):
        self.client = client
        self.mutations: List[Dict[str, Any]] = []

    def create(self, document: Dict[str, Any]) -> "Transaction":
        self.mutations.append({"create": document})
        return self

    def create_if_not_exists(self, document: Dict[str, Any]) -> "Transaction":
        self.mutations.append({"createIfNotExists": document})
        return self

    def create_or_replace(self, document: Dict[str, Any]) -> "Transaction":
        self.mutations.append({"createOrReplace": document})
        return self

    def delete(self, document_id: str) -> "Transaction":
        self.mutations.append({"delete": {"id": document_id}})
        return self

    def patch(self, patch: Patch) -> "Transaction":
        self.mutations.extend(patch.to_mutations())
        return self

    def __len__(self) -> int:
        return len(self.mutations)

    async def commit(self, auto_generate_array_keys: bool = True) -> Dict[str, Any]:
        """Send every queued mutation in a single transaction."""
        if self.client is None:
            raise CMSAPIException("Transaction is not bound to a client")
        if not self.mutations:
            return {"transactionId": None, "results": []}
        return await self.client.mutate(self.mutations, auto_generate_array_keys=auto_generate_array_keys)


class SanityClient:
    """
    Client for the Sanity HTTP API (query, doc and mutate endpoints).
    """

    def __init__(
        self,
        project_id: Optional[str] = None,
        dataset: Optional[str] = None,
        token: Optional[str] = None,
        api_version: Optional[str] = None,
    ):
        """Initialize the Sanity client from explicit values or settings."""
        self.settings = get_settings()
        self.project_id = project_id or self.settings.SANITY_PROJECT_ID
        self.dataset = dataset or self.settings.SANITY_DATASET
        self.token = token or self.settings.SANITY_API_TOKEN
        self.api_version = api_version or self.settings.SANITY_API_VERSION

        self.base_url = f"https://{self.project_id}.api.sanity.io/v{self.api_version}"

        # Session and rate limiting
        self.session: Optional[aiohttp.ClientSession] = None
        self._last_request_time = 0.0
        self._min_request_interval = 0.05

    @property
    def is_configured(self) -> bool:
        """Check whether project, dataset and token are present."""
        return bool(self.project_id and self.dataset and self.token)

    async def initialize(self, test_connection: bool = True):
        """
        Initialize the HTTP session and optionally test the connection.

        Raises:
            CMSAPIException: If initialization fails
        """
        try:
            await self._ensure_session()
            if test_connection:
                await self.test_connection()
            logger.info(f"✅ Sanity client initialized ({self.project_id}/{self.dataset})")

        except Exception as e:
            logger.error(f"❌ Failed to initialize Sanity client: {e}")
            await self.close()
            raise CMSAPIException(f"Client initialization failed: {str(e)}") from e

    async def _ensure_session(self):
        if self.session is not None:
            return
        if not self.is_configured:
            raise ConfigurationException(
                "Missing Sanity configuration (SANITY_PROJECT_ID / SANITY_DATASET / SANITY_API_TOKEN).",
                setting="SANITY_PROJECT_ID",
            )

        timeout = ClientTimeout(total=self.settings.SANITY_TIMEOUT, connect=10)
        connector = aiohttp.TCPConnector(limit=100, limit_per_host=30)

        self.session = aiohttp.ClientSession(
            timeout=timeout,
            connector=connector,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.token}",
                "User-Agent": f"{self.settings.APP_NAME}/{self.settings.APP_VERSION}",
            },
        )

    async def close(self):
        """Close the HTTP session and clean up resources."""
        if self.session:
            await self.session.close()
            self.session = None
            logger.info("Sanity client closed")

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        max_retries: int = 3,
    ) -> Dict[str, Any]:
        """
        Execute an API request with rate limiting and error handling.

        Args:
            method: HTTP method
            path: Path relative to the versioned API root
            params: Query string parameters
            json_body: JSON request body
            max_retries: Maximum number of attempts

        Returns:
            Dict: Decoded JSON response

        Raises:
            CMSAPIException: If the request fails after retries
        """
        await self._ensure_session()
        await self._check_rate_limit()

        url = f"{self.base_url}{path}"
        last_exception: Optional[CMSAPIException] = None

        for attempt in range(max_retries):
            started = time.time()
            try:
                async with self.session.request(method, url, params=params, json=json_body) as response:
                    self._last_request_time = time.time()
                    log_api_call(method, path, response.status, time.time() - started)

                    if response.status == 429:
                        retry_after = parse_retry_after(response.headers.get("Retry-After"))
                        logger.warning(f"Sanity rate limit exceeded, waiting {retry_after}s (attempt {attempt + 1})")
                        last_exception = CMSAPIException(
                            "Sanity rate limit exceeded", api_response_code=429, endpoint=path,
                            rate_limited=True, retry_after=retry_after,
                        )
                        await asyncio.sleep(retry_after)
                        continue

                    response_data = await read_response_body(response)

                    if response.status >= 500:
                        raise CMSAPIException(
                            f"HTTP {response.status}: {self._error_message(response_data)}",
                            api_response_code=response.status,
                            endpoint=path,
                        )
                    if response.status >= 400:
                        # Errores del request: no tiene sentido reintentar
                        raise CMSAPIException(
                            f"HTTP {response.status}: {self._error_message(response_data)}",
                            api_response_code=response.status,
                            endpoint=path,
                            response_body=response_data,
                        )
                    if isinstance(response_data, str):
                        raise CMSAPIException(
                            f"HTTP {response.status}: invalid JSON response",
                            api_response_code=response.status,
                            endpoint=path,
                            status_code=502,
                        )

                    return response_data or {}

            except CMSAPIException as e:
                if not e.is_retryable or attempt >= max_retries - 1:
                    raise
                last_exception = e
                wait_time = min(2**attempt, 10)
                logger.warning(f"Sanity server error, retrying in {wait_time}s (attempt {attempt + 1})")
                await asyncio.sleep(wait_time)

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exception = CMSAPIException(f"Network error: {str(e)}", endpoint=path)
                if attempt < max_retries - 1:
                    wait_time = min(2**attempt, 10)  # Exponential backoff, max 10s
                    logger.warning(f"Network error, retrying in {wait_time}s (attempt {attempt + 1})")
                    await asyncio.sleep(wait_time)

        # All retries failed
        raise last_exception or CMSAPIException("Sanity request failed after retries", endpoint=path)

    @staticmethod
    def _error_message(response_data: Any) -> str:
        if not isinstance(response_data, dict):
            return "Unknown error"
        error = response_data.get("error")
        if isinstance(error, dict):
            return error.get("description") or error.get("type") or "Unknown error"
        return response_data.get("message") or error or "Unknown error"

    async def _check_rate_limit(self):
        """
        Keep a minimum interval between requests.
        """
        current_time = time.time()
        time_since_last_request = current_time - self._last_request_time

        if time_since_last_request < self._min_request_interval:
            await asyncio.sleep(self._min_request_interval - time_since_last_request)

    # === QUERIES ===

    async def fetch(self, query: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Run a GROQ query.

        Args:
            query: GROQ query string
            params: Query parameters, referenced as $name in the query

        Returns:
            Any: The query result (list, dict, number or None)
        """
        body = {"query": query, "params": params or {}}
        response_data = await self._request("POST", f"/data/query/{self.dataset}", json_body=body)
        return response_data.get("result")

    async def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a single document by id.

        Returns:
            The document, or None if it does not exist
        """
        response_data = await self._request("GET", f"/data/doc/{self.dataset}/{document_id}")
        documents = response_data.get("documents") or []
        return documents[0] if documents else None

    # === MUTATIONS ===

    async def mutate(
        self,
        mutations: List[Dict[str, Any]],
        auto_generate_array_keys: bool = True,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Send a list of mutations as a single transaction.

        Args:
            mutations: Sanity mutation objects
            auto_generate_array_keys: Let Sanity fill missing array _key values
            dry_run: Validate without persisting

        Returns:
            Dict: transactionId and per-mutation results
        """
        if not mutations:
            return {"transactionId": None, "results": []}

        params = {
            "returnIds": "true",
            "autoGenerateArrayKeys": "true" if auto_generate_array_keys else "false",
        }
        if dry_run:
            params["dryRun"] = "true"

        # Los mutate no se reintentan: un timeout puede haber aplicado la transacción
        return await self._request(
            "POST",
            f"/data/mutate/{self.dataset}",
            params=params,
            json_body={"mutations": mutations},
            max_retries=1,
        )

    async def create(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Create a document (fails if the id exists)."""
        return await self.mutate([{"create": document}])

    async def create_if_not_exists(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Create a document unless one with the same _id exists."""
        return await self.mutate([{"createIfNotExists": document}])

    async def create_or_replace(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Create or fully replace a document."""
        return await self.mutate([{"createOrReplace": document}])

    async def delete(self, document_id: str) -> Dict[str, Any]:
        """Delete a document by id."""
        return await self.mutate([{"delete": {"id": document_id}}])

    def patch(self, document_id: str) -> Patch:
        """Start a patch bound to this client."""
        return Patch(document_id, client=self)

    def transaction(self) -> Transaction:
        """Start a transaction bound to this client."""
        return Transaction(client=self)

    @staticmethod
    def created_id(response: Dict[str, Any]) -> Optional[str]:
        """Return the first document id from a mutation response."""
        results = (response or {}).get("results") or []
        return results[0].get("id") if results else None

    async def test_connection(self) -> bool:
        """
        Test the connection to the Sanity API.

        Raises:
            CMSAPIException: If connection test fails
        """
        try:
            await self.fetch("count(*[_type == $type][0...1])", {"type": "order"})
            logger.info(f"✅ Connected to Sanity dataset: {self.project_id}/{self.dataset}")
            return True

        except Exception as e:
            logger.error(f"❌ Connection test failed: {e}")
            raise CMSAPIException(f"Connection test failed: {str(e)}") from e

    def __str__(self):
        """String representation of the client."""
        return f"SanityClient(project={self.project_id}, dataset={self.dataset})"

    def __repr__(self):
        """Detailed string representation of the client."""
        return (
            f"SanityClient("
            f"project_id='{self.project_id}', "
            f"dataset='{self.dataset}', "
            f"api_version='{self.api_version}', "
            f"initialized={self.session is not None})"
        )


# Global client instance
_sanity_client: Optional[SanityClient] = None


def get_sanity_client() -> SanityClient:
    """
    Obtiene la instancia global del cliente de Sanity.

    La sesión HTTP se abre de forma perezosa en el primer request.

    Returns:
        SanityClient: Cliente configurado
    """
    global _sanity_client
    if _sanity_client is None:
        _sanity_client = SanityClient()
    return _sanity_client


async def close_sanity_client() -> None:
    """Cierra la sesión del cliente global."""
    global _sanity_client
    if _sanity_client is not None:
        await _sanity_client.close()
        _sanity_client = None


async def test_sanity_connection() -> bool:
    """
    Verifica la conectividad con Sanity.

    Returns:
        bool: True si la conexión es exitosa, False en caso contrario
    """
    try:
        client = get_sanity_client()
        return await client.test_connection()
    except Exception as e:
        logger.error(f"Sanity connection test failed: {e}")
        return False
