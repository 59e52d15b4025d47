"""Errores de dominio de la cola y los eventos"""
from typing import Any, Optional


class DomainError(Exception):
    def __init__(self, message: str, status_code: int = 400, payload: Optional[Any] = None):
        self.message = message
        self.status_code = status_code
        self.payload = payload
        super().__init__(message)


class ValidationError(DomainError):
    def __init__(self, message: str):
        super().__init__(message, 400)


class ForbiddenError(DomainError):
    def __init__(self, message: str):
        super().__init__(message, 403)


class NotFoundError(DomainError):
    def __init__(self, message: str):
        super().__init__(message, 404)


class ConflictError(DomainError):
    """Transición no permitida para el estado actual (sesión cerrada, ticket duplicado, etc.)"""

    def __init__(self, message: str, status_code: int = 400, payload: Optional[Any] = None):
        super().__init__(message, status_code, payload)


class BusyError(DomainError):
    """Carrera sobre el número de ticket; el cliente debe reintentar"""

    def __init__(self, message: str = "Sistem sibuk, silakan klik daftar kembali."):
        super().__init__(message, 409)
