from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on. The generic codes are:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    Domain errors below refine these with their own codes.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DuplicateEmail(ConflictError):
    error_code = "duplicate_email"

    def __init__(self, message: str = "email already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class DuplicatePendingApplication(ConflictError):
    error_code = "duplicate_pending_application"

    def __init__(self, message: str = "a pending role application already exists", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTransition(ConflictError):
    """The application is not in a state that allows the requested change."""
    error_code = "invalid_transition"


class InvalidCode(ValidationError):
    error_code = "invalid_code"

    def __init__(self, message: str = "invalid or expired verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentials(AuthenticationError):
    """Unknown email and wrong password share this error so account existence cannot be inferred."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class Unauthenticated(AuthenticationError):
    error_code = "unauthenticated"

    def __init__(self, message: str = "authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(Unauthenticated):
    """Refresh token unknown, expired, replayed or of the wrong type."""
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDisabled(ForbiddenError):
    error_code = "account_disabled"

    def __init__(self, message: str = "account is disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class StorageUnavailable(ServiceError):
    """Backing store cannot be reached; safe to retry (503)."""
    status_code = 503
    error_code = "storage_unavailable"
    retryable = True

    def __init__(self, message: str = "storage temporarily unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DuplicateEmail",
    "DuplicatePendingApplication",
    "InvalidTransition",
    "InvalidCode",
    "InvalidCredentials",
    "Unauthenticated",
    "InvalidToken",
    "AccountDisabled",
    "StorageUnavailable",
]
