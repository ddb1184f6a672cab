from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
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


class BadRequestError(ServiceError):
    """Request is malformed or missing required identifiers (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """No session, or the session may not touch the target chat (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class TurnSetupError(NotFoundError):
    """A turn failed before generation started (404 with a generic message)."""

    def __init__(self, message: str = "An error occurred while processing your request!", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g. a turn already running on the chat (409)."""
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


class ConfigurationError(ServerError):
    """Missing credentials or an unknown model selector (500, never retried)."""
    error_code = "configuration_error"


class UpstreamError(ServiceError):
    """A third-party API answered with a non-success status."""
    status_code = 502
    error_code = "upstream_error"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "NotFoundError",
    "TurnSetupError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ConfigurationError",
    "UpstreamError",
]
