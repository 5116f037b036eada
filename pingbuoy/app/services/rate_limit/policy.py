"""Failure classification and fail-open / fail-closed policy.

Rate limiting is defense in depth. Outside production a backend outage
must not take features down, so checks fail open with a synthesized
result. In production an outage fails closed: the typed backend error
propagates and the HTTP layer refuses the request.
"""

import asyncio
import socket
from enum import Enum
from typing import Optional

import redis.exceptions

from pingbuoy.app.core.config import PRODUCTION, settings
from pingbuoy.app.core.logging import get_log_context, get_logger
from pingbuoy.app.exceptions import (
    BackendAuthError,
    BackendProtocolError,
    BackendUnreachableError,
    RateLimitBackendError,
)
from pingbuoy.app.services.rate_limit.models import RateLimitConfig, RateLimitResult

logger = get_logger(__name__)


class BackendErrorKind(str, Enum):
    DNS = "dns"
    AUTH = "auth"
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    PROTOCOL = "protocol"
    GENERIC = "generic"


_HINTS = {
    BackendErrorKind.DNS: "Redis DNS resolution failed - check REDIS_URL",
    BackendErrorKind.AUTH: "Redis authentication failed - check REDIS_TOKEN",
    BackendErrorKind.TIMEOUT: "Redis connection timeout - server may be overloaded",
    BackendErrorKind.CONNECTION_REFUSED: "Redis connection refused - server may be down",
    BackendErrorKind.PROTOCOL: "Unexpected response from rate limit script",
    BackendErrorKind.GENERIC: "Redis rate limiting error",
}

_DNS_MARKERS = ("enotfound", "name or service not known", "getaddrinfo", "nodename nor servname")
_AUTH_MARKERS = ("noauth", "wrongpass", "invalid password", "unauthorized", "forbidden", "401", "403")
_REFUSED_MARKERS = ("econnrefused", "connection refused", "connect call failed")
_TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout")


def classify_backend_error(exc: BaseException) -> BackendErrorKind:
    """Classify a backend failure for diagnostics and error mapping."""
    if isinstance(exc, RateLimitBackendError):
        try:
            return BackendErrorKind(exc.kind)
        except ValueError:
            pass

    message = str(exc).lower()

    if isinstance(exc, BackendProtocolError):
        return BackendErrorKind.PROTOCOL
    if isinstance(exc, (redis.exceptions.AuthenticationError, redis.exceptions.AuthorizationError)):
        return BackendErrorKind.AUTH
    if isinstance(exc, (asyncio.TimeoutError, redis.exceptions.TimeoutError)):
        return BackendErrorKind.TIMEOUT
    if isinstance(exc, socket.gaierror) or any(marker in message for marker in _DNS_MARKERS):
        return BackendErrorKind.DNS
    if isinstance(exc, ConnectionRefusedError) or any(marker in message for marker in _REFUSED_MARKERS):
        return BackendErrorKind.CONNECTION_REFUSED
    if any(marker in message for marker in _AUTH_MARKERS):
        return BackendErrorKind.AUTH
    if any(marker in message for marker in _TIMEOUT_MARKERS):
        return BackendErrorKind.TIMEOUT
    if isinstance(exc, redis.exceptions.ResponseError):
        # An error reply to a well-formed command means the script misbehaved
        return BackendErrorKind.PROTOCOL
    return BackendErrorKind.GENERIC


def to_backend_error(exc: BaseException) -> RateLimitBackendError:
    """Translate a raw driver exception into the rate limit error taxonomy."""
    if isinstance(exc, RateLimitBackendError):
        return exc

    kind = classify_backend_error(exc)
    detail = str(exc) or exc.__class__.__name__
    message = f"{_HINTS[kind]}: {detail}"

    if kind is BackendErrorKind.AUTH:
        return BackendAuthError(message)
    if kind is BackendErrorKind.PROTOCOL:
        return BackendProtocolError(message)
    if kind in (
        BackendErrorKind.DNS,
        BackendErrorKind.TIMEOUT,
        BackendErrorKind.CONNECTION_REFUSED,
    ):
        return BackendUnreachableError(message, kind=kind.value)
    if isinstance(exc, (redis.exceptions.ConnectionError, ConnectionError)):
        return BackendUnreachableError(message, kind=kind.value)
    return RateLimitBackendError(message, kind=kind.value)


class FailurePolicy:
    """Decides between failing open and failing closed on backend errors."""

    def __init__(self, environment: Optional[str] = None) -> None:
        self.environment = (environment or settings.environment).lower()

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    def should_fail_open(
        self,
        config: Optional[RateLimitConfig],
        error: BaseException,
    ) -> bool:
        """Whether a request may proceed despite the backend error.

        A protocol error in production never fails open: it cannot be told
        apart from a miscount.
        """
        if self.is_production and isinstance(error, BackendProtocolError):
            return False
        skip = bool(config is not None and config.skip_if_disabled)
        return skip or not self.is_production

    def handle(
        self,
        error: RateLimitBackendError,
        operation: str,
        config: Optional[RateLimitConfig] = None,
        identifier: Optional[str] = None,
        service: Optional[str] = None,
    ) -> None:
        """Log the failure, then return to fail open or raise to fail closed.

        Raises:
            RateLimitBackendError: When the policy fails closed
        """
        kind = classify_backend_error(error)
        context = get_log_context(identifier=identifier, service=service, error_kind=kind.value)
        logger.error(f"Rate limit {operation} failed: {error.message}", extra=context)

        if self.should_fail_open(config, error):
            logger.warning(
                f"Failing open: allowing {operation} despite {kind.value} backend error",
                extra=context,
            )
            return

        logger.error(f"Failing closed: {operation} rejected in {self.environment}", extra=context)
        raise error

    @staticmethod
    def fail_open_result(config: RateLimitConfig, now: int) -> RateLimitResult:
        """Best-effort "allowed" result for a check that could not be counted."""
        return RateLimitResult(
            success=True,
            limit=config.max_requests,
            remaining=config.max_requests - 1,
            reset_time=now + config.window_ms,
            total_hits=1,
            window_start=now - config.window_ms,
        )

    @staticmethod
    def fail_open_status(config: RateLimitConfig, now: int) -> RateLimitResult:
        """Best-effort read-only status when the backend is unreachable."""
        return RateLimitResult(
            success=True,
            limit=config.max_requests,
            remaining=config.max_requests,
            reset_time=now + config.window_ms,
            total_hits=0,
            window_start=now - config.window_ms,
        )
