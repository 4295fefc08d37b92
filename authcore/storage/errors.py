from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write was refused because it would break a store invariant."""

    status_code = 409

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateKeyError(ConstraintViolation):
    """Email or role name already taken (compared case-insensitively for email)."""


class MissingReferenceError(ConstraintViolation):
    """The write names a user, role or permission that does not exist."""

    status_code = 404


__all__ = ["ConstraintViolation", "DuplicateKeyError", "MissingReferenceError"]
