"""Handlers globales de excepciones"""
from fastapi import Request, status
from fastapi.responses import JSONResponse
import logging

from shared.exceptions import DomainError

logger = logging.getLogger(__name__)


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    logger.info(f"Domain error en {request.url.path}: {exc.message}")
    content = {"message": exc.message}
    if exc.payload is not None:
        content["data"] = exc.payload
    return JSONResponse(status_code=exc.status_code, content=content)


async def general_500_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled exception en {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": "Terjadi kesalahan pada sistem internal kami."},
    )


EXCEPTION_HANDLERS = {
    DomainError: domain_error_handler,
    Exception: general_500_exception_handler,
}


def register_exception_handlers(app):
    for exception_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exception_class, handler)
