from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - validation_error (400, 413 for oversized uploads)
    - invalid_credentials (400)
    - conflict (400)
    - unauthorized (401)
    - not_found (404)
    - upstream_timeout (500)
    - upstream_error (500)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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


class InvalidCredentialsError(ServiceError):
    """Email/password pair did not match a registered user (400)."""
    status_code = 400
    error_code = "invalid_credentials"


class AuthenticationError(ServiceError):
    """Bearer token missing, invalid, expired or revoked (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found or not owned by the caller (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. an email that is already registered (400)."""
    status_code = 400
    error_code = "conflict"


class UpstreamTimeoutError(ServiceError):
    """Upstream provider or attachment extraction exceeded its deadline (500)."""
    status_code = 500
    error_code = "upstream_timeout"


class UpstreamError(ServiceError):
    """Upstream provider failed or returned an unusable response (500)."""
    status_code = 500
    error_code = "upstream_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "UpstreamTimeoutError",
    "UpstreamError",
    "ServerError",
]
