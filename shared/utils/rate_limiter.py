"""
Rate limiting (slowapi sobre Redis) para la toma de tickets y el escaneo de QR

Toda una escuela suele salir por la misma IP (wifi del colegio), así que el
límite se aplica por usuario cuando el request trae un token de sesión.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request, Response
from starlette.responses import JSONResponse
import logging

from app.core.config import settings
from shared.auth.jwt_handler import decode_token

logger = logging.getLogger(__name__)

RATE_LIMIT_STORAGE_URI = settings.RATE_LIMIT_STORAGE_URI or settings.REDIS_URL

RATE_LIMITS = {
    # Cada alumno pulsa "daftar" varias veces cuando abre la sesión
    "join": "20/minute",
    # Kiosko escaneando tickets
    "validation": "60/minute",
    "admin": "120/minute",
}


def client_ip(request: Request) -> str:
    """Primera IP de X-Forwarded-For (nginx/cloudflare) o la del socket"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or get_remote_address(request)


def rate_limit_key(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        payload = decode_token(auth_header[len("Bearer "):])
        if payload and payload.get("sub"):
            return f"user:{payload['sub']}"
    return f"ip:{client_ip(request)}"


try:
    limiter = Limiter(
        key_func=rate_limit_key,
        storage_uri=RATE_LIMIT_STORAGE_URI,
        strategy="fixed-window",
        headers_enabled=False,  # Compatibilidad con response_model de FastAPI
        enabled=settings.RATE_LIMIT_ENABLED,
    )
except Exception as e:
    logger.warning(f"Storage de rate limiting no disponible, usando memoria local: {e}")
    limiter = Limiter(
        key_func=rate_limit_key,
        strategy="fixed-window",
        headers_enabled=False,
        enabled=settings.RATE_LIMIT_ENABLED,
    )


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """429 con Retry-After y el mismo formato {"message"} del resto de la API"""
    retry_after = exc.detail.split(" ")[-1] if exc.detail else "60"
    if not retry_after.isdigit():
        retry_after = "60"

    logger.warning(f"Rate limit excedido: {rate_limit_key(request)} en {request.url.path}")

    return JSONResponse(
        status_code=429,
        content={
            "message": "Terlalu banyak permintaan. Silakan tunggu sebentar lalu coba lagi.",
            "retry_after_seconds": int(retry_after),
        },
        headers={"Retry-After": retry_after},
    )
