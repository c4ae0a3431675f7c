"""Error taxonomy shared by the ticket services and the HTTP adapter."""

from __future__ import annotations

from typing import Any

_UNIQUE_MARKERS = ("unique", "duplicate")


class ServiceError(Exception):
    """Base class for errors that surface to API callers."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(ServiceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(ServiceError):
    status_code = 404
    code = "NOT_FOUND"


class DatabaseError(ServiceError):
    """Wraps a failure reported by the data store."""

    status_code = 500
    code = "DATABASE_ERROR"


def is_unique_violation(exc: BaseException) -> bool:
    """Return ``True`` when the store rejected a write on a uniqueness rule."""

    message = str(getattr(exc, "orig", None) or exc).lower()
    return any(marker in message for marker in _UNIQUE_MARKERS)
