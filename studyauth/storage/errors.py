from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated.

    ``detail["field"]`` names the offending column (``email``, ``username``,
    ``phone``) so callers can switch on it.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class StorageUnavailable(Exception):
    """Raised when the backing database or cache cannot be reached."""


__all__ = ["ConstraintViolation", "StorageUnavailable"]
