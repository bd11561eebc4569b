from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for authority outcomes that callers translate to responses.

    Each subclass carries the HTTP status and stable error code an outer
    transport layer should use:
    - unauthorized (401)
    - forbidden (403)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Token missing, unknown, revoked or expired (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Policy evaluation denied the request (403)."""
    status_code = 403
    error_code = "forbidden"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "ForbiddenError",
]
