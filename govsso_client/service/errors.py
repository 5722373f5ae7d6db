from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP status_code and a stable error_code.
    Browser-facing flows only ever expose the error_code (as ``?error=<code>``);
    the message and detail are for logs and API clients.
    """

    status_code: int = 400
    error_code: str = "invalid_request"

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
    """A token or request failed validation (400). Never mutates state."""
    status_code = 400
    error_code = "invalid_request"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session was expired by back-channel logout or token expiry (401)."""
    error_code = "expired_session"


class ConcurrencyConflict(ServiceError):
    """A session record changed underneath a writer (409).

    Raised when a token replacement races an expiry or another replacement.
    """
    status_code = 409
    error_code = "conflict"


class UpstreamError(ServiceError):
    """The identity provider could not be reached or refused the request (502).

    ``error_code`` carries the OAuth2 error code when the provider sent one
    (``invalid_grant``, ``invalid_client``, ...).
    """
    status_code = 502
    error_code = "token_endpoint_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "ConcurrencyConflict",
    "UpstreamError",
]
