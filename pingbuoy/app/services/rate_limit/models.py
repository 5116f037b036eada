"""Data models for sliding window rate limiting."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from pingbuoy.app.exceptions import RateLimitConfigError


def _require_positive_int(name: str, value: Any) -> None:
    # bool is an int subclass; True must not pass as a quota of 1
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise RateLimitConfigError(f"{name} must be a positive integer, got {value!r}")


@dataclass(frozen=True)
class RateLimitConfig:
    """Window size and quota for one scope of one service class.

    Attributes:
        window_ms: Length of the sliding window in milliseconds
        max_requests: Hits admitted per window
        key_prefix: Overrides the limiter's key prefix when set
        skip_if_disabled: Fail open on backend errors even in production
    """
    window_ms: int
    max_requests: int
    key_prefix: Optional[str] = None
    skip_if_disabled: bool = False

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise RateLimitConfigError unless window and quota are positive."""
        _require_positive_int("window_ms", self.window_ms)
        _require_positive_int("max_requests", self.max_requests)
        if self.key_prefix is not None and not self.key_prefix:
            raise RateLimitConfigError("key_prefix must not be empty")


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    success: bool
    limit: int
    remaining: int
    reset_time: int
    total_hits: int
    window_start: int
    retry_after: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_time": self.reset_time,
            "retry_after": self.retry_after,
            "total_hits": self.total_hits,
            "window_start": self.window_start,
        }


@dataclass
class DualLimitResult:
    """Combined outcome of an IP check and an optional user check."""
    ip: RateLimitResult
    user: Optional[RateLimitResult] = None

    @property
    def success(self) -> bool:
        return self.ip.success and (self.user is None or self.user.success)

    @property
    def limiting_result(self) -> RateLimitResult:
        """The result to report to the client.

        The user result when the IP check passed but the user check failed,
        otherwise the IP result.
        """
        if self.ip.success and self.user is not None and not self.user.success:
            return self.user
        return self.ip


@dataclass
class RateLimitStats:
    """Aggregate counters from a best-effort scan of the keyspace."""
    total_requests: int = 0
    unique_ips: int = 0
    unique_users: int = 0
    blocked_identifiers: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_requests": self.total_requests,
            "unique_ips": self.unique_ips,
            "unique_users": self.unique_users,
            "blocked_identifiers": self.blocked_identifiers,
        }

