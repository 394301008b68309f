from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base for the closed set of failures a store may raise.

    Callers dispatch on the concrete subclass; the message is for humans only.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class RecordNotFound(StoreError):
    """Raised when an update targets a row that does not exist."""


class StoreUnavailable(StoreError):
    """Raised when the backing database cannot be reached."""


__all__ = ["StoreError", "ConstraintViolation", "RecordNotFound", "StoreUnavailable"]
