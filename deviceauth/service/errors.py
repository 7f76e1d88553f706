from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP status_code, a stable error_code,
    and whether the caller may retry the same request unchanged. Only
    persistence failures are retryable; every other kind requires the client
    to re-authenticate or re-register the device.
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


class InvalidCredentialsError(AuthenticationError):
    """Raised by the upstream credential verifier, never by session handling."""
    error_code = "invalid_credentials"


class InvalidTokenError(AuthenticationError):
    """Access token is malformed, mis-signed, or expired."""
    error_code = "invalid_token"


class SessionNotFoundError(AuthenticationError):
    """No active session holds the presented refresh token."""
    error_code = "session_not_found"


class SessionExpiredError(AuthenticationError):
    """The session's refresh window has elapsed."""
    error_code = "session_expired"


class PersistenceError(ServiceError):
    """Session store unreachable or timed out (503)."""
    status_code = 503
    error_code = "persistence_failure"
    retryable = True


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "SessionNotFoundError",
    "SessionExpiredError",
    "PersistenceError",
]
