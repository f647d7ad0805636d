from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailableError(Exception):
    """The backing store could not be reached or failed mid-operation.

    This is the only failure the engine components raise; every expected
    negative outcome (bad token, revoked session, wrong password) is returned
    as ``None``/``False`` instead.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"store operation failed: {operation}")
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreUnavailableError"]
