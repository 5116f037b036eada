"""Custom exceptions for the PingBuoy application."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pingbuoy.app.services.rate_limit.models import RateLimitResult


class PingBuoyException(Exception):
    """Base class for PingBuoy exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "PingBuoy error"):
        self.message = message
        super().__init__(message)


class RateLimitConfigError(PingBuoyException):
    """Raised for an invalid rate limit configuration or lookup.

    This is a programming error: it is never degraded around and always
    propagates to the caller.
    """
    status_code = 500


class RateLimitBackendError(PingBuoyException):
    """Raised when the rate limit backend cannot answer.

    Only raised to callers when the failure policy decides to fail closed.
    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    kind: str = "generic"

    def __init__(self, message: str = "Rate limiting backend error", kind: str | None = None):
        if kind is not None:
            self.kind = kind
        super().__init__(message)


class BackendUnreachableError(RateLimitBackendError):
    """DNS failure, refused connection or timeout talking to the backend."""
    kind = "unreachable"


class BackendAuthError(RateLimitBackendError):
    """The backend rejected our credentials."""
    kind = "auth"


class BackendProtocolError(RateLimitBackendError):
    """The atomic script returned a response of unexpected shape."""
    kind = "protocol"


class RateLimitExceededError(PingBuoyException):
    """Raised by route guards when a quota is exhausted.

    Carries the limiting RateLimitResult so the HTTP layer can emit
    quota headers. Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, result: RateLimitResult, message: str = "Rate limit exceeded"):
        self.result = result
        super().__init__(message)


class IdentifierBlockedError(PingBuoyException):
    """Raised when an identifier is on the temporary block list.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, identifier: str, retry_after: int = 3600):
        self.identifier = identifier
        self.retry_after = retry_after
        super().__init__("Temporarily blocked due to abuse")
