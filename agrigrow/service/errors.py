from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable machine-readable
    ``error_code`` that clients can switch on:
    - VALIDATION_ERROR, TOKEN_REQUIRED, EMAIL_EXISTS (400)
    - INVALID_CREDENTIALS, NO_TOKEN, INVALID_TOKEN_FORMAT, INVALID_TOKEN (401)
    - FORBIDDEN (403)
    - USER_NOT_FOUND (404)
    - RATE_LIMITED (429)
    - SERVER_ERROR (500)
    - SERVICE_UNAVAILABLE (503)
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
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
    error_code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class TokenRequiredError(ServiceError):
    status_code = 400
    error_code = "TOKEN_REQUIRED"
    default_message = "Refresh token is required"


class DuplicateAccountError(ServiceError):
    """An account with this email already exists (400)."""
    status_code = 400
    error_code = "EMAIL_EXISTS"
    default_message = "Email already exists"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "INVALID_TOKEN"
    default_message = "Invalid or expired token"


class InvalidCredentialsError(AuthenticationError):
    # Same message for unknown email and wrong password
    error_code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"


class NoTokenError(AuthenticationError):
    error_code = "NO_TOKEN"
    default_message = "No token provided"


class InvalidTokenFormatError(AuthenticationError):
    error_code = "INVALID_TOKEN_FORMAT"
    default_message = "Invalid token format"


class InvalidTokenError(AuthenticationError):
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient role (403)."""
    status_code = 403
    error_code = "FORBIDDEN"
    default_message = "Access forbidden"


class NotFoundError(ServiceError):
    """Account not found (404)."""
    status_code = 404
    error_code = "USER_NOT_FOUND"
    default_message = "User not found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"
    default_message = "Too many requests"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"
    default_message = "Internal server error"


class ServiceUnavailableError(ServiceError):
    """Storage unreachable or timed out (503)."""
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"
    default_message = "Service temporarily unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "TokenRequiredError",
    "DuplicateAccountError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "NoTokenError",
    "InvalidTokenFormatError",
    "InvalidTokenError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
]
