"""Static rate limit tables per service class and scope.

Callers look up an entry here before calling the limiter; windows and
quotas are never written inline at call sites.
"""

from enum import Enum
from types import MappingProxyType
from typing import Mapping

from pingbuoy.app.exceptions import RateLimitConfigError
from pingbuoy.app.services.rate_limit.models import RateLimitConfig

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


class Plan(str, Enum):
    """Subscription tiers with their own per-user quotas."""
    FREE = "free"
    PRO = "pro"
    FOUNDER = "founder"


def _tiers(free: int, pro: int, founder: int, ip: int, window_ms: int = HOUR_MS) -> dict:
    return {
        Plan.FREE.value: RateLimitConfig(window_ms=window_ms, max_requests=free),
        Plan.PRO.value: RateLimitConfig(window_ms=window_ms, max_requests=pro),
        Plan.FOUNDER.value: RateLimitConfig(window_ms=window_ms, max_requests=founder),
        "ip": RateLimitConfig(window_ms=window_ms, max_requests=ip),
    }


_CONFIGS = {
    # Authentication endpoints
    "auth.login": {
        "ip": RateLimitConfig(window_ms=15 * MINUTE_MS, max_requests=5),
        "user": RateLimitConfig(window_ms=15 * MINUTE_MS, max_requests=10),
    },
    "auth.register": {
        "ip": RateLimitConfig(window_ms=HOUR_MS, max_requests=3),
        "user": RateLimitConfig(window_ms=HOUR_MS, max_requests=1),
    },
    "auth.resetPassword": {
        "ip": RateLimitConfig(window_ms=HOUR_MS, max_requests=5),
        "user": RateLimitConfig(window_ms=HOUR_MS, max_requests=3),
    },
    # Contact form
    "contact": {
        "ip": RateLimitConfig(window_ms=HOUR_MS, max_requests=3),
        "user": RateLimitConfig(window_ms=DAY_MS, max_requests=10),
    },
    # Analytics events
    "analytics": _tiers(free=1000, pro=10000, founder=100000, ip=100),
    # Outbound email
    "email": {
        "recipient": RateLimitConfig(window_ms=HOUR_MS, max_requests=10),
        "sender": RateLimitConfig(window_ms=DAY_MS, max_requests=100),
        "ip": RateLimitConfig(window_ms=HOUR_MS, max_requests=20),
    },
    # Uptime checks
    "monitoring": _tiers(free=100, pro=1000, founder=10000, ip=50),
    # Dead link scans
    "scanning": _tiers(free=5, pro=50, founder=500, ip=2),
    # Page speed checks
    "performance": _tiers(free=10, pro=100, founder=1000, ip=5),
    # General API
    "api": _tiers(free=1000, pro=10000, founder=100000, ip=200),
    # Expensive per-user operations
    "site_operations": {"user": RateLimitConfig(window_ms=HOUR_MS, max_requests=10)},
    "integration_operations": {"user": RateLimitConfig(window_ms=HOUR_MS, max_requests=20)},
    "monitoring_trigger": {"user": RateLimitConfig(window_ms=HOUR_MS, max_requests=10)},
    "data_export": {"user": RateLimitConfig(window_ms=HOUR_MS, max_requests=3)},
    "admin_operations": {"user": RateLimitConfig(window_ms=HOUR_MS, max_requests=100)},
    "expensive_operations": {"user": RateLimitConfig(window_ms=MINUTE_MS, max_requests=100)},
}

RATE_LIMIT_CONFIGS: Mapping[str, Mapping[str, RateLimitConfig]] = MappingProxyType(
    {service: MappingProxyType(scopes) for service, scopes in _CONFIGS.items()}
)

SERVICE_CLASSES = tuple(RATE_LIMIT_CONFIGS)


def get_rate_limit_config(service: str, scope: str) -> RateLimitConfig:
    """Look up the config for a service class and scope.

    Raises:
        RateLimitConfigError: If the service class or scope is unknown
    """
    scopes = RATE_LIMIT_CONFIGS.get(service)
    if scopes is None:
        raise RateLimitConfigError(f"Unknown rate limit service class: {service!r}")
    config = scopes.get(scope)
    if config is None:
        raise RateLimitConfigError(
            f"Service class {service!r} has no {scope!r} scope "
            f"(available: {', '.join(scopes)})"
        )
    return config


def get_plan_config(service: str, plan: "Plan | str") -> RateLimitConfig:
    """Look up the per-user config for a plan tier."""
    try:
        plan = Plan(plan)
    except ValueError:
        raise RateLimitConfigError(f"Unknown plan: {plan!r}") from None
    return get_rate_limit_config(service, plan.value)


def get_user_config(service: str, plan: "Plan | str | None" = None) -> RateLimitConfig:
    """Per-user config, by plan for tiered services or the flat ``user`` scope."""
    scopes = RATE_LIMIT_CONFIGS.get(service, {})
    if "user" in scopes:
        return scopes["user"]
    return get_plan_config(service, plan or Plan.FREE)


def has_user_scope(service: str) -> bool:
    """Whether ``service`` limits authenticated users at all."""
    scopes = RATE_LIMIT_CONFIGS.get(service, {})
    return "user" in scopes or Plan.FREE.value in scopes
