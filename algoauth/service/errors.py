from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for operational errors surfaced verbatim to the caller.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
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
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing, invalid, expired or revoked credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(AuthenticationError):
    """Token signature is valid but its expiry has passed (401)."""

    def __init__(self, message: str = "Token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenMalformedError(AuthenticationError):
    """Token signature or structure is invalid (401)."""

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthorizationError(ServiceError):
    """Authenticated but lacking privilege or ownership (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email or username at registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitError(ServiceError):
    """Rate limit exceeded (429). ``headers`` carries the X-RateLimit-* values."""
    status_code = 429
    error_code = "rate_limited"


class ServiceUnavailableError(ServiceError):
    """Backing store or cache unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenExpiredError",
    "TokenMalformedError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitError",
    "ServiceUnavailableError",
    "ServerError",
]
