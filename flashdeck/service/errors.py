from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    Nothing below the API boundary writes a response directly; flows raise one
    of these and ``register_exception_handlers`` renders the error envelope:

    - VALIDATION_ERROR (400)
    - UNAUTHORIZED / INVALID_SESSION / INVALID_CREDENTIALS (401)
    - FORBIDDEN / SESSION_MISMATCH (403)
    - ALREADY_DELETED / EMAIL_ALREADY_EXISTS (409)
    - RATE_LIMIT_EXCEEDED (429)
    - DATABASE_ERROR / PASSWORD_UPDATE_ERROR / UPDATE_ERROR / REGISTRATION_ERROR /
      PROFILE_CREATION_ERROR / INTERNAL_SERVER_ERROR (500)
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Any] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail


class ValidationError(ServiceError):
    """Request body failed validation (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """No authenticated session (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidSessionError(AuthenticationError):
    """Access token could not be re-verified for the session user (401)."""
    error_code = "INVALID_SESSION"


class InvalidCredentialsError(AuthenticationError):
    """Password re-verification failed (401)."""
    error_code = "INVALID_CREDENTIALS"


class ForbiddenError(ServiceError):
    """Request refused, e.g. missing or invalid CSRF token (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class SessionMismatchError(ForbiddenError):
    """Cookie user id disagrees with the authenticated session (403)."""
    error_code = "SESSION_MISMATCH"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "CONFLICT"


class AlreadyDeletedError(ConflictError):
    error_code = "ALREADY_DELETED"


class EmailAlreadyExistsError(ConflictError):
    error_code = "EMAIL_ALREADY_EXISTS"


class RateLimitedError(ServiceError):
    """Attempt budget exhausted (429); ``retry_after`` feeds the Retry-After header."""

    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, *, retry_after: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))


class UpstreamError(ServiceError):
    """Identity provider or data store failure (500)."""
    status_code = 500
    error_code = "DATABASE_ERROR"


class DatabaseError(UpstreamError):
    error_code = "DATABASE_ERROR"


class PasswordUpdateError(UpstreamError):
    error_code = "PASSWORD_UPDATE_ERROR"


class AccountUpdateError(UpstreamError):
    error_code = "UPDATE_ERROR"


class LogoutError(UpstreamError):
    error_code = "LOGOUT_ERROR"


class RegistrationError(UpstreamError):
    error_code = "REGISTRATION_ERROR"


class ProfileCreationError(UpstreamError):
    """Profile row insert failed after the identity user was created (500)."""
    error_code = "PROFILE_CREATION_ERROR"


class ServerError(ServiceError):
    """Unexpected failure (500)."""
    status_code = 500
    error_code = "INTERNAL_SERVER_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidSessionError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "SessionMismatchError",
    "ConflictError",
    "AlreadyDeletedError",
    "EmailAlreadyExistsError",
    "RateLimitedError",
    "UpstreamError",
    "DatabaseError",
    "PasswordUpdateError",
    "AccountUpdateError",
    "LogoutError",
    "RegistrationError",
    "ProfileCreationError",
    "ServerError",
]
