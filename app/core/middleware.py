"""
Middlewares HTTP de la aplicación.

Orden de ejecución (de afuera hacia adentro): CORS, TrustedHost (solo
producción), logging con request id, headers de seguridad y rate limiting.
Starlette ejecuta los middlewares en orden inverso al que se registran.
"""

import logging
import time
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Deque, Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.core.logging_config import request_id_ctx
from app.utils.error_handler import ErrorCode

settings = get_settings()
logger = logging.getLogger(__name__)

LOCALHOST_ORIGIN_REGEX = r"^http://localhost:\d+$"

# Los webhooks y el tracking de emails no cuentan para el rate limit
RATE_LIMIT_EXEMPT_PREFIXES = ("/api/v1/webhooks", "/api/v1/email/open", "/api/v1/email/click", "/health")

CORS_ALLOWED_HEADERS = ["Content-Type", "Authorization", "X-Request-ID", "Stripe-Signature", "X-Auth0-Signature"]
CORS_EXPOSED_HEADERS = ["X-Process-Time", "X-Request-ID", "X-Rate-Limit-Remaining", "X-Rate-Limit-Reset"]

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

STATUS_EMOJIS = ((200, "✅"), (300, "↩️"), (400, "⚠️"), (500, "❌"))


class SlidingWindowRateLimiter:
    """
    Cuenta requests por cliente dentro de una ventana deslizante.

    Los clientes sin requests dentro de la ventana se descartan en cada
    llamada a hit(), así la memoria queda acotada a los clientes activos.
    """

    def __init__(self, limit: int, window_seconds: float = 60.0):
        self.limit = limit
        self.window_seconds = window_seconds
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)

    def hit(self, client: str, now: Optional[float] = None) -> Tuple[bool, int]:
        """
        Registra una request del cliente.

        Args:
            client: Identificador del cliente (IP)
            now: Timestamp actual; time.time() por defecto

        Returns:
            Tuple[bool, int]: (permitida, requests restantes en la ventana)
        """
        now = time.time() if now is None else now
        window_start = now - self.window_seconds

        for key in [key for key, hits in self._hits.items() if not hits or hits[-1] <= window_start]:
            del self._hits[key]

        hits = self._hits[client]
        while hits and hits[0] <= window_start:
            hits.popleft()

        if len(hits) >= self.limit:
            return False, 0
        hits.append(now)
        return True, self.limit - len(hits)


def generate_request_id() -> str:
    """ID corto de 8 caracteres para correlacionar logs de una request."""
    return uuid.uuid4().hex[:8]


def get_client_ip(request: Request) -> str:
    """
    IP real del cliente: X-Forwarded-For, luego X-Real-IP, luego la conexión.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def get_status_emoji(status_code: int) -> str:
    emoji = "📤"
    for floor, marker in STATUS_EMOJIS:
        if status_code >= floor:
            emoji = marker
    return emoji if status_code < 600 else "📤"


def configure_cors_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_origin_regex=LOCALHOST_ORIGIN_REGEX,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=CORS_ALLOWED_HEADERS,
        expose_headers=CORS_EXPOSED_HEADERS,
    )
    logger.info(f"✅ CORS: {settings.cors_origins} + localhost")


def configure_trusted_host_middleware(app: FastAPI) -> None:
    """Valida el header Host fuera de debug cuando ALLOWED_HOSTS está configurado."""
    if settings.DEBUG or not settings.allowed_hosts:
        return
    hosts = settings.allowed_hosts + ["localhost", "127.0.0.1"]
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=hosts)
    logger.info(f"✅ TrustedHost: {hosts}")


def configure_request_logging_middleware(app: FastAPI) -> None:
    """
    Loguea cada request con su request id y lo publica en request_id_ctx.

    El id viene del header X-Request-ID o se genera, y vuelve en la respuesta
    junto con X-Process-Time.
    """

    @app.middleware("http")
    async def log_requests_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        label = f"[{request_id}] {request.method} {request.url.path}"
        token = request_id_ctx.set(request_id)
        started = time.time()

        logger.info(f"📨 {label} - Client: {get_client_ip(request)}")
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"❌ {label} - Error: {e} - Time: {time.time() - started:.3f}s")
            raise
        finally:
            request_id_ctx.reset(token)

        elapsed = time.time() - started
        logger.info(f"{get_status_emoji(response.status_code)} {label} - Status: {response.status_code} - Time: {elapsed:.3f}s")
        if elapsed > settings.SLOW_REQUEST_THRESHOLD:
            logger.warning(f"🐌 {label} - Slow request: {elapsed:.3f}s > {settings.SLOW_REQUEST_THRESHOLD}s")

        response.headers["X-Process-Time"] = f"{elapsed:.3f}"
        response.headers["X-Request-ID"] = request_id
        return response


def configure_security_headers_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        response = await call_next(request)
        response.headers.update(SECURITY_HEADERS)
        if not settings.DEBUG and request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


def configure_rate_limiting_middleware(app: FastAPI) -> None:
    """
    Limita a RATE_LIMIT_PER_MINUTE requests por IP.

    Webhooks, tracking de emails, health checks y preflight OPTIONS quedan
    fuera del límite.
    """
    if not settings.ENABLE_RATE_LIMITING:
        return

    limiter = SlidingWindowRateLimiter(settings.RATE_LIMIT_PER_MINUTE)

    @app.middleware("http")
    async def rate_limiting_middleware(request: Request, call_next):
        path = request.url.path
        if request.method == "OPTIONS" or path.startswith(RATE_LIMIT_EXEMPT_PREFIXES):
            return await call_next(request)

        now = time.time()
        client_ip = get_client_ip(request)
        allowed, remaining = limiter.hit(client_ip, now)
        limit_headers = {
            "X-Rate-Limit-Limit": str(limiter.limit),
            "X-Rate-Limit-Remaining": str(remaining),
            "X-Rate-Limit-Reset": str(int(now + limiter.window_seconds)),
        }

        if not allowed:
            logger.warning(f"🚫 Rate limit exceeded for {client_ip} on {path}")
            return JSONResponse(
                status_code=429,
                content={
                    "error": f"Maximum {limiter.limit} requests per minute allowed",
                    "error_type": ErrorCode.RATE_LIMIT_EXCEEDED.value,
                    "retry_after": int(limiter.window_seconds),
                    "path": path,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "request_id": request.headers.get("X-Request-ID"),
                },
                headers={"Retry-After": str(int(limiter.window_seconds)), **limit_headers},
            )

        response = await call_next(request)
        response.headers.update(limit_headers)
        return response


def configure_all_middleware(app: FastAPI) -> None:
    """
    Registra todos los middlewares.

    Args:
        app: Instancia de FastAPI
    """
    configure_rate_limiting_middleware(app)
    configure_security_headers_middleware(app)
    configure_request_logging_middleware(app)
    configure_trusted_host_middleware(app)
    # Último en registrarse: responde los preflight antes que el resto
    configure_cors_middleware(app)
    logger.info("✅ Middlewares configurados")
