"""Sliding window rate limiting backed by Redis.

This package provides an atomic sliding-window-log limiter with IP and
user scoping, a static table of per-service quotas, and an
environment-aware fail-open / fail-closed policy for backend outages.
"""

from .backend import KeyValueBackend, RedisBackend
from .configs import (
    RATE_LIMIT_CONFIGS,
    SERVICE_CLASSES,
    Plan,
    get_plan_config,
    get_rate_limit_config,
    get_user_config,
    has_user_scope,
)
from .identifiers import (
    build_key,
    ip_identifier,
    recipient_identifier,
    sender_identifier,
    user_identifier,
)
from .limiter import SlidingWindowRateLimiter
from .models import DualLimitResult, RateLimitConfig, RateLimitResult, RateLimitStats
from .policy import BackendErrorKind, FailurePolicy, classify_backend_error, to_backend_error
from .redis_config import (
    RedisConfigValidation,
    RedisConfigValidator,
    RedisHealthCheck,
    detect_provider,
)
from .redis_lua import SLIDING_WINDOW_SCRIPT

__all__ = [
    # Models
    "RateLimitConfig",
    "RateLimitResult",
    "DualLimitResult",
    "RateLimitStats",
    # Backends
    "KeyValueBackend",
    "RedisBackend",
    "SLIDING_WINDOW_SCRIPT",
    # Registry
    "RATE_LIMIT_CONFIGS",
    "SERVICE_CLASSES",
    "Plan",
    "get_rate_limit_config",
    "get_plan_config",
    "get_user_config",
    "has_user_scope",
    # Identifiers
    "build_key",
    "ip_identifier",
    "user_identifier",
    "recipient_identifier",
    "sender_identifier",
    # Policy
    "BackendErrorKind",
    "FailurePolicy",
    "classify_backend_error",
    "to_backend_error",
    # Redis configuration
    "RedisConfigValidation",
    "RedisConfigValidator",
    "RedisHealthCheck",
    "detect_provider",
    # Limiter
    "SlidingWindowRateLimiter",
]
