"""
Endpoints para ejecutar backfills desde el Studio o por HTTP.

Un secreto compartido (BACKFILL_SECRET) evita ejecuciones accidentales entre
entornos. dryRun llega por query string y un boolean en el body lo reemplaza.
"""

import hmac
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.api.v1.schemas.ops_schemas import BackfillJobInfo
from app.core.config import get_settings
from app.services.backfills import get_backfill_job, list_backfill_jobs
from app.utils.error_handler import AppException, NotFoundException, ValidationException, error_message
from app.utils.id_utils import to_bool, to_int

logger = logging.getLogger(__name__)

router = APIRouter()

# Parámetros de control que no se pasan al job como opciones
CONTROL_PARAMS = ("token", "dryRun", "limit", "resume")


def presented_token(request: Request) -> str:
    """Token del header Authorization (Bearer) o, si no hay, de ?token."""
    authorization = request.headers.get("authorization") or ""
    if authorization.lower().startswith("bearer "):
        authorization = authorization[7:]
    return (authorization.strip() or request.query_params.get("token") or "").strip()


def is_authorized(request: Request) -> bool:
    expected = (get_settings().BACKFILL_SECRET or "").strip()
    if not expected:
        return True
    return hmac.compare_digest(presented_token(request).encode("utf-8"), expected.encode("utf-8"))


async def read_json_body(request: Request) -> Dict[str, Any]:
    """
    Lee el body JSON de un POST; GET y bodies vacíos se tratan como {}.

    Raises:
        ValidationException: Si el body no es un objeto JSON
    """
    if request.method != "POST":
        return {}
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationException("Invalid JSON body", field="body", status_code=400) from e
    if not isinstance(body, dict):
        raise ValidationException("Invalid JSON body", field="body", status_code=400)
    return body


def build_run_arguments(query: Dict[str, str], body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Combina query string y body en los argumentos de BackfillJob.run().

    Returns:
        Dict: dry_run, limit, resume y las opciones propias del job
    """
    dry_run = (query.get("dryRun") or "").lower() == "true"
    if isinstance(body.get("dryRun"), bool):
        dry_run = body["dryRun"]

    merged = {**{key: value for key, value in query.items() if key != "token"}, **body}
    limit: Optional[int] = None
    if merged.get("limit") not in (None, ""):
        limit = to_int(merged["limit"])
        if limit is None:
            raise ValidationException(
                f"Invalid limit: {merged['limit']}", field="limit", invalid_value=merged["limit"], status_code=400
            )

    options = {key: value for key, value in merged.items() if key not in CONTROL_PARAMS}
    return {"dry_run": dry_run, "limit": limit, "resume": bool(to_bool(merged.get("resume"))), **options}


@router.get("", response_model=List[BackfillJobInfo])
async def list_jobs() -> List[Dict[str, Any]]:
    """
    Lista los backfills disponibles.

    Returns:
        List: nombre, descripción y tamaño de página de cada job
    """
    return list_backfill_jobs()


@router.api_route("/{job_name}", methods=["GET", "POST"])
async def run_backfill(job_name: str, request: Request) -> JSONResponse:
    """
    Ejecuta un backfill.

    Args:
        job_name: Nombre del job (orders, invoices, order-stripe, ...)
        request: Request con token, dryRun y opciones del job

    Returns:
        JSONResponse: Resultado del run; 401 sin token válido, 404 si el job
        no existe y 500 con {"error": mensaje} si el run falla
    """
    if not is_authorized(request):
        logger.warning(f"⚠️ Unauthorized backfill request for {job_name}")
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    try:
        job = get_backfill_job(job_name)
    except NotFoundException as e:
        return JSONResponse(status_code=404, content={"error": e.message})

    body = await read_json_body(request)
    arguments = build_run_arguments(dict(request.query_params), body)
    logger.info(f"🔄 Backfill {job_name} requested (dryRun={arguments['dry_run']})")

    try:
        result = await job.run(**arguments)
    except ValidationException:
        raise
    except AppException as e:
        logger.error(f"❌ Backfill {job_name} failed: {e.message}")
        return JSONResponse(status_code=500, content={"error": e.message})
    except Exception as e:
        logger.error(f"❌ Backfill {job_name} failed: {e}")
        return JSONResponse(status_code=500, content={"error": error_message(e)})

    return JSONResponse(status_code=200, content=result)
