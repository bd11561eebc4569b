from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached or fails mid-operation.

    Backends wrap every transport error in this type (chained via
    ``__cause__``) so callers never handle driver-specific exceptions.
    """

    def __init__(self, operation: str, backend: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(f"{backend} store unavailable during {operation}")
        self.operation = operation
        self.backend = backend
        self.detail = detail or {}


__all__ = ["ConstraintViolation", "StoreUnavailable"]
