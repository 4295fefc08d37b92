from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base for errors the HTTP layer renders as an error envelope.

    ``status_code`` and ``error_code`` are fixed per class. ``detail`` holds
    structured context that is safe to return to the caller; anything
    sensitive belongs in the log event, not here.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request is well-formed but violates a domain rule (400)."""


class BadRequestError(ValidationError):
    pass


class AuthenticationError(ServiceError):
    """Caller could not be authenticated (401)."""

    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class InvalidCredentialsError(AuthenticationError):
    """Login failed; unknown email, wrong password and inactive account are indistinguishable."""

    default_message = "invalid email or password"


class InvalidTokenError(AuthenticationError):
    """Access, challenge, refresh or reset token rejected for any reason."""

    default_message = "invalid or expired token"


class InvalidCodeError(AuthenticationError):
    default_message = "invalid verification code"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"
    default_message = "insufficient permissions"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"
    default_message = "resource not found"


class ConflictError(ServiceError):
    """Duplicate creation, e.g. an email or role name already in use (409)."""

    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "InvalidCodeError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
