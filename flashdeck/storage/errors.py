from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when the backing store cannot complete a read or write."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a uniqueness or foreign-key constraint is violated."""


class ProfileNotFound(StoreError):
    """No profile row exists for the requested user."""


__all__ = ["ConstraintViolation", "ProfileNotFound", "StoreError"]
