"""
Endpoints para administrar log drains y reenviarles eventos.

Los drains guardan credenciales de terceros en sus headers: todo el router
exige el token LOG_DRAIN_SECRET (o BACKFILL_SECRET) y las respuestas nunca
devuelven los valores de los headers.
"""

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.api.v1.endpoints.backfills import presented_token
from app.api.v1.schemas.ops_schemas import FunctionLogRequest, LogDrainCreate, LogDrainUpdate, LogEvent
from app.core.config import get_settings
from app.services.log_drains import get_log_drain_service, mask_headers, to_log_drain

logger = logging.getLogger(__name__)


async def require_log_drain_token(request: Request) -> None:
    """
    Verifica el token del API de log drains.

    Sin secreto configurado el API queda cerrado.

    Raises:
        HTTPException: 401 si el token falta o no coincide
    """
    expected = get_settings().log_drain_secret
    presented = presented_token(request)
    if not expected or not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        logger.warning(f"⚠️ Unauthorized log drain request: {request.method} {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"}
        )


router = APIRouter(dependencies=[Depends(require_log_drain_token)])


@router.get("")
async def list_log_drains() -> JSONResponse:
    drains = await get_log_drain_service().list_drains()
    return JSONResponse(status_code=200, content={"drains": [mask_headers(drain) for drain in drains]})


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_log_drain(request: LogDrainCreate) -> JSONResponse:
    """
    Crea un log drain.

    Returns:
        JSONResponse: 201 con el drain creado; 400 si falta name o url
    """
    drain = await get_log_drain_service().create_drain(request.model_dump())
    return JSONResponse(status_code=201, content={"drain": mask_headers(drain)})


@router.get("/{drain_id}")
async def get_log_drain(drain_id: str) -> JSONResponse:
    document = await get_log_drain_service().get_drain(drain_id)
    return JSONResponse(status_code=200, content={"drain": mask_headers(to_log_drain(document))})


@router.patch("/{drain_id}")
async def update_log_drain(drain_id: str, request: LogDrainUpdate) -> JSONResponse:
    drain = await get_log_drain_service().update_drain(drain_id, request.model_dump(exclude_none=True))
    return JSONResponse(status_code=200, content={"drain": mask_headers(drain)})


@router.delete("/{drain_id}")
async def delete_log_drain(drain_id: str) -> JSONResponse:
    await get_log_drain_service().delete_drain(drain_id)
    return JSONResponse(status_code=200, content={"ok": True, "deleted": drain_id})


@router.post("/{drain_id}/test")
async def test_log_drain(drain_id: str, event: Optional[Dict[str, Any]] = Body(default=None)) -> JSONResponse:
    """
    Envía un evento de prueba al drain y guarda el resultado.

    Returns:
        JSONResponse: {"ok": bool, "status": int|None, "error": str|None}
    """
    result = await get_log_drain_service().test_drain(drain_id, event or None)
    return JSONResponse(status_code=200, content=result)


@router.post("/fan-out")
async def fan_out_event(event: LogEvent) -> JSONResponse:
    """
    Entrega un evento a todos los drains habilitados.

    Un drain que falla no afecta a los demás: cada uno tiene su resultado.
    """
    results = await get_log_drain_service().fan_out(event.model_dump())
    delivered = sum(1 for result in results if result["ok"])
    return JSONResponse(status_code=200, content={"delivered": delivered, "results": results})


@router.post("/function-log")
async def record_function_log(request: FunctionLogRequest) -> JSONResponse:
    """Guarda un functionLog y lo reenvía a los drains."""
    result = await get_log_drain_service().record_function_log(
        request.name, request.status, request.message, request.metadata
    )
    return JSONResponse(status_code=200, content=result)
