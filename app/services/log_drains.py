"""
Log drains: destinos HTTP que reciben eventos de log de la aplicación.

Los drains se guardan como documentos logDrain en Sanity (headers como
lista [{key, value}]). fan_out() entrega un evento a todos los drains
habilitados en paralelo: cada destino tiene éxito o falla por separado y
ninguno cancela a los demás.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp
from aiohttp import ClientTimeout

from app.core.config import get_settings
from app.core.logging_config import log_api_call
from app.db.sanity_client import SanityClient, get_sanity_client
from app.utils.error_handler import LogDrainDeliveryException, NotFoundException, ValidationException, error_message
from app.utils.id_utils import new_key, now_iso, to_str
from app.utils.retry_handler import LOG_DRAIN_RETRY_HANDLER

logger = logging.getLogger(__name__)

LOG_DRAIN_TYPE = "logDrain"
DRAIN_FIELDS = "{_id, name, provider, url, headers, enabled, lastTestedAt, lastTestResult}"
MASKED_VALUE = "********"


def headers_to_array(headers: Optional[Dict[str, str]]) -> Optional[List[Dict[str, str]]]:
    """Dict de headers a la lista [{_key, key, value}] que se guarda en Sanity."""
    if not headers:
        return None
    return [{"_key": new_key(), "key": key, "value": str(value)} for key, value in headers.items()]


def headers_from_array(entries: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, str]]:
    """Lista [{key, value}] a dict; ignora entradas sin key."""
    if not entries:
        return None
    headers = {entry["key"]: str(entry.get("value") or "") for entry in entries if entry.get("key")}
    return headers or None


def to_log_drain(document: Dict[str, Any]) -> Dict[str, Any]:
    """Documento logDrain al formato de la API."""
    return {
        "id": document.get("_id"),
        "name": document.get("name"),
        "provider": document.get("provider"),
        "url": document.get("url"),
        "enabled": bool(document.get("enabled")),
        "headers": headers_from_array(document.get("headers")),
        "lastTestedAt": document.get("lastTestedAt"),
        "lastTestResult": document.get("lastTestResult"),
    }


def mask_headers(drain: Dict[str, Any]) -> Dict[str, Any]:
    """Copia del drain con los valores de headers ocultos (suelen ser credenciales)."""
    headers = drain.get("headers")
    if not headers:
        return drain
    return {**drain, "headers": {key: MASKED_VALUE for key in headers}}


class LogDrainService:
    """
    CRUD de log drains y entrega de eventos.
    """

    def __init__(self, sanity: Optional[SanityClient] = None, timeout: Optional[float] = None):
        self._sanity = sanity
        self.timeout = timeout or get_settings().LOG_DRAIN_TIMEOUT
        self.retry_handler = LOG_DRAIN_RETRY_HANDLER

    @property
    def sanity(self) -> SanityClient:
        if self._sanity is None:
            self._sanity = get_sanity_client()
        return self._sanity

    # === CRUD ===

    async def list_drains(self) -> List[Dict[str, Any]]:
        documents = await self.sanity.fetch(f'*[_type == "{LOG_DRAIN_TYPE}"] | order(name asc){DRAIN_FIELDS}')
        return [to_log_drain(document) for document in documents or []]

    async def get_drain(self, drain_id: str) -> Dict[str, Any]:
        document = await self.sanity.get_document(drain_id)
        if not document or document.get("_type") != LOG_DRAIN_TYPE:
            raise NotFoundException(f"Log drain not found: {drain_id}", resource="logDrain", resource_id=drain_id)
        return document

    async def create_drain(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Crea un log drain.

        Args:
            data: name, provider, url, enabled, headers

        Raises:
            ValidationException: Si falta name o url
        """
        name = to_str(data.get("name"))
        url = to_str(data.get("url"))
        if not name or not url:
            raise ValidationException("Log drain requires name and url", field="name" if not name else "url", status_code=400)

        document = {
            "_type": LOG_DRAIN_TYPE,
            "name": name,
            "provider": to_str(data.get("provider")) or "custom",
            "url": url,
            "enabled": bool(data.get("enabled", True)),
        }
        headers = headers_to_array(data.get("headers"))
        if headers:
            document["headers"] = headers

        response = await self.sanity.create(document)
        document["_id"] = SanityClient.created_id(response)
        logger.info(f"✅ Log drain created: {name}")
        return to_log_drain(document)

    async def update_drain(self, drain_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Actualiza los campos enviados de un log drain."""
        existing = await self.get_drain(drain_id)
        values: Dict[str, Any] = {}
        for field in ("name", "provider", "url"):
            if to_str(updates.get(field)):
                values[field] = to_str(updates[field])
        if isinstance(updates.get("enabled"), bool):
            values["enabled"] = updates["enabled"]
        if updates.get("headers"):
            values["headers"] = headers_to_array(updates["headers"])

        if not values:
            return to_log_drain(existing)

        await self.sanity.patch(drain_id).set(values).commit()
        return to_log_drain({**existing, **values})

    async def delete_drain(self, drain_id: str) -> None:
        await self.get_drain(drain_id)
        await self.sanity.delete(drain_id)
        logger.info(f"🗑️ Log drain deleted: {drain_id}")

    # === ENTREGA ===

    async def _post(self, session: aiohttp.ClientSession, drain: Dict[str, Any], event: Dict[str, Any]) -> int:
        """
        POST del evento a un drain.

        Raises:
            LogDrainDeliveryException: Status no 2xx o error de red
        """
        headers = {"Content-Type": "application/json", **(headers_from_array(drain.get("headers")) or {})}
        started = time.time()
        try:
            async with session.post(drain["url"], json=event, headers=headers) as response:
                log_api_call("POST", drain["url"], response.status, time.time() - started)
                if response.status >= 300:
                    raise LogDrainDeliveryException(
                        f"Log drain responded {response.status}",
                        api_response_code=response.status,
                        endpoint=drain["url"],
                    )
                return response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise LogDrainDeliveryException(
                f"Log drain request failed: {e or type(e).__name__}", endpoint=drain["url"]
            ) from e

    async def _deliver(self, session: aiohttp.ClientSession, drain: Dict[str, Any], event: Dict[str, Any]) -> int:
        return await self.retry_handler.execute(
            self._post, session, drain, event, context={"drain": drain.get("_id")}
        )

    async def test_drain(self, drain_id: str, event: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Envía un evento de prueba y guarda lastTestedAt/lastTestResult.

        Returns:
            Dict: {"ok": bool, "status": int|None, "error": str|None}
        """
        drain = await self.get_drain(drain_id)
        payload = event or {
            "timestamp": now_iso(),
            "level": "test",
            "message": "Log drain connectivity test",
            "metadata": {"drainId": drain_id},
        }
        result: Dict[str, Any] = {"ok": False, "status": None, "error": None}
        async with aiohttp.ClientSession(timeout=ClientTimeout(total=self.timeout)) as session:
            try:
                result["status"] = await self._post(session, drain, payload)
                result["ok"] = True
            except LogDrainDeliveryException as e:
                result["status"] = e.api_response_code
                result["error"] = e.message

        await (
            self.sanity.patch(drain_id)
            .set({"lastTestedAt": now_iso(), "lastTestResult": "success" if result["ok"] else "failed"})
            .commit()
        )
        return result

    async def fan_out(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Entrega un evento a todos los drains habilitados.

        Las entregas corren en paralelo con asyncio.gather(return_exceptions=True):
        un drain que falla queda reportado en su resultado y no afecta a los demás.

        Args:
            event: Evento de log (timestamp, level, message, metadata)

        Returns:
            List[Dict]: {drainId, name, ok, status, error} por drain
        """
        drains = await self.sanity.fetch(
            f'*[_type == "{LOG_DRAIN_TYPE}" && enabled == true]{DRAIN_FIELDS}'
        ) or []
        if not drains:
            return []

        payload = {"timestamp": now_iso(), **event}
        async with aiohttp.ClientSession(timeout=ClientTimeout(total=self.timeout)) as session:
            outcomes = await asyncio.gather(
                *(self._deliver(session, drain, payload) for drain in drains), return_exceptions=True
            )

        results = []
        for drain, outcome in zip(drains, outcomes):
            entry = {"drainId": drain.get("_id"), "name": drain.get("name"), "ok": False, "status": None, "error": None}
            if isinstance(outcome, BaseException):
                entry["status"] = getattr(outcome, "api_response_code", None)
                entry["error"] = error_message(outcome)
                logger.warning(f"⚠️ Log drain {drain.get('name')} delivery failed: {entry['error']}")
            else:
                entry["ok"] = True
                entry["status"] = outcome
            results.append(entry)

        delivered = sum(1 for entry in results if entry["ok"])
        logger.info(f"📤 Log event delivered to {delivered}/{len(results)} drains")
        return results

    async def record_function_log(
        self,
        name: str,
        status: str,
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Guarda un documento functionLog y reenvía el evento a los drains.

        Returns:
            Dict: logId y resultados del fan-out
        """
        document = {
            "_type": "functionLog",
            "functionName": name,
            "status": status,
            "message": message,
            "metadata": metadata or None,
            "executedAt": now_iso(),
        }
        response = await self.sanity.create({key: value for key, value in document.items() if value is not None})
        level = "error" if status in ("error", "failed") else "info"
        deliveries = await self.fan_out(
            {"level": level, "message": message or f"{name}: {status}", "metadata": {"function": name, **(metadata or {})}}
        )
        return {"logId": SanityClient.created_id(response), "deliveries": deliveries}


# Servicio global
_log_drain_service: Optional[LogDrainService] = None


def get_log_drain_service() -> LogDrainService:
    """Obtiene la instancia global del servicio de log drains."""
    global _log_drain_service
    if _log_drain_service is None:
        _log_drain_service = LogDrainService()
    return _log_drain_service
