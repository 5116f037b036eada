"""Health endpoints for the rate limiting backend.

GET /health/redis reports configuration, connectivity and whether rate
limiting is enforced or failing open. POST /health/redis additionally
exercises the limiter end to end. GET /health/rate-limit/stats
summarises the keyspace.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from pingbuoy.app.core.config import settings
from pingbuoy.app.core.logging import get_logger
from pingbuoy.app.exceptions import RateLimitBackendError
from pingbuoy.app.middleware.auth import require_admin_in_production
from pingbuoy.app.services.rate_limit import (
    RateLimitConfig,
    RedisConfigValidator,
    SlidingWindowRateLimiter,
)

logger = get_logger(__name__)
router = APIRouter()

SLOW_LATENCY_MS = 1000
HEALTH_TEST_CONFIG = RateLimitConfig(window_ms=60_000, max_requests=10)
HEALTH_TEST_SERVICE = "health-test"

_NO_CACHE = {"Cache-Control": "no-cache, no-store, must-revalidate"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health/redis")
async def redis_health(
    request: Request,
    _: str = Depends(require_admin_in_production),
) -> JSONResponse:
    """Redis configuration and connection status."""
    validator = RedisConfigValidator()
    validation = validator.validate_config()
    backend = getattr(request.app.state, "rate_limit_backend", None)
    health_check = await validator.health_check(backend)

    if not health_check.connected:
        status = "error"
    elif validation.warnings or (health_check.latency_ms or 0) > SLOW_LATENCY_MS:
        status = "degraded"
    else:
        status = "healthy"

    enforced = validation.is_valid and health_check.connected
    body = {
        "timestamp": _now_iso(),
        "environment": settings.environment,
        "status": status,
        "redis": {
            "configured": validation.is_valid,
            "provider": validation.provider,
            **health_check.to_dict(),
        },
        "configuration": {
            "validation": validation.to_dict(include_suggestions=not settings.is_production),
        },
        "rate_limiting": {
            "status": "active" if enforced else "disabled",
            "fallback_mode": "enforced" if enforced else "fail_open",
        },
    }
    if not enforced and settings.is_production:
        body["rate_limiting"]["fallback_mode"] = "fail_closed"

    return JSONResponse(
        status_code=503 if status == "error" else 200,
        content=body,
        headers=_NO_CACHE,
    )


def _test_entry(
    name: str,
    passed: bool,
    message: str,
    started: float,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "name": name,
        "status": "pass" if passed else "fail",
        "message": message,
        "duration_ms": int((time.perf_counter() - started) * 1000),
    }
    if details is not None:
        entry["details"] = details
    return entry


@router.post("/health/redis")
async def redis_self_test(
    request: Request,
    _: str = Depends(require_admin_in_production),
) -> JSONResponse:
    """Validate configuration, connect, then run a real check-and-reset."""
    tests: List[Dict[str, Any]] = []
    validator = RedisConfigValidator()

    started = time.perf_counter()
    validation = validator.validate_config()
    tests.append(_test_entry(
        "Configuration Validation",
        validation.is_valid,
        "Configuration is valid" if validation.is_valid else ", ".join(validation.errors),
        started,
        validation.to_dict(include_suggestions=not settings.is_production),
    ))
    if not validation.is_valid:
        return JSONResponse(
            status_code=400,
            content={"timestamp": _now_iso(), "tests": tests, "overall": "failed",
                     "message": "Configuration validation failed"},
        )

    started = time.perf_counter()
    backend = getattr(request.app.state, "rate_limit_backend", None)
    health_check = await validator.health_check(backend)
    tests.append(_test_entry(
        "Basic Connectivity",
        health_check.connected,
        f"Connected successfully ({health_check.latency_ms}ms)"
        if health_check.connected else (health_check.error or "Connection failed"),
        started,
        health_check.to_dict(),
    ))
    if not health_check.connected:
        return JSONResponse(
            status_code=503,
            content={"timestamp": _now_iso(), "tests": tests, "overall": "failed",
                     "message": "Redis connection failed"},
        )

    started = time.perf_counter()
    limiter: Optional[SlidingWindowRateLimiter] = getattr(request.app.state, "rate_limiter", None)
    test_identifier = f"health-test:{int(time.time() * 1000)}"
    try:
        if limiter is None:
            raise RuntimeError("Rate limiter is not initialized")
        result = await limiter.check_limit(test_identifier, HEALTH_TEST_CONFIG, HEALTH_TEST_SERVICE)
        await limiter.reset(test_identifier, HEALTH_TEST_SERVICE)
        tests.append(_test_entry(
            "Rate Limiting Functionality",
            result.success,
            f"Rate limiting {'working' if result.success else 'failed'} - {result.remaining} remaining",
            started,
            {"limit": result.limit, "remaining": result.remaining, "reset_time": result.reset_time},
        ))
    except (RateLimitBackendError, RuntimeError) as e:
        logger.error(f"Rate limiting self-test failed: {e}")
        tests.append(_test_entry("Rate Limiting Functionality", False, str(e), started))

    passed = sum(1 for t in tests if t["status"] == "pass")
    return JSONResponse(
        status_code=200,
        content={
            "timestamp": _now_iso(),
            "tests": tests,
            "overall": "passed" if passed == len(tests) else "failed",
            "total_duration_ms": sum(t["duration_ms"] for t in tests),
            "summary": {
                "total_tests": len(tests),
                "passed": passed,
                "failed": len(tests) - passed,
            },
        },
    )


@router.get("/health/rate-limit/stats")
async def rate_limit_stats(
    request: Request,
    _: str = Depends(require_admin_in_production),
) -> JSONResponse:
    """Keyspace-wide counters; walks the keyspace, so diagnostics only."""
    limiter: Optional[SlidingWindowRateLimiter] = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return JSONResponse(
            status_code=503,
            content={"error": "rate_limiting_unavailable", "message": "Rate limiter is not initialized"},
        )
    stats = await limiter.get_stats()
    return JSONResponse(
        status_code=200,
        content={"timestamp": _now_iso(), "stats": stats.to_dict()},
        headers=_NO_CACHE,
    )
