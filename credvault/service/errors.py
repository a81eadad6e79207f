from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that the API envelope exposes to clients:
    - validation_error (400)
    - invalid_token (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - locked (423)
    - server_error (500)
    - unavailable (503)
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


class InvalidOrExpiredTokenError(ServiceError):
    """One-time token is unknown, already used, or past its expiry (400)."""
    status_code = 400
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshTokenError(AuthenticationError):
    def __init__(self, message: str = "Invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnauthenticatedError(AuthenticationError):
    def __init__(self, message: str = "Not authorized to access this route", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class EmailNotVerifiedError(ForbiddenError):
    def __init__(self, message: str = "Please verify your email to access this resource", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    def __init__(self, message: str = "User already exists", **kwargs) -> None:
        kwargs.setdefault("detail", {"field": "email"})
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many failed logins; rejected until the lock window ends (423)."""
    status_code = 423
    error_code = "locked"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class NotificationFailedError(ServerError):
    def __init__(self, message: str = "Email could not be sent", **kwargs) -> None:
        super().__init__(message, **kwargs)


class StoreUnavailableError(ServiceError):
    """Credential store timed out or is unreachable (503); safe to retry."""
    status_code = 503
    error_code = "unavailable"
    retryable = True


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidOrExpiredTokenError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidRefreshTokenError",
    "UnauthenticatedError",
    "ForbiddenError",
    "EmailNotVerifiedError",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "AccountLockedError",
    "ServerError",
    "NotificationFailedError",
    "StoreUnavailableError",
]
