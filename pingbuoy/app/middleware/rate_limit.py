"""Rate limiting middleware and route guards.

Turns limiter results into HTTP: quota headers on every limited response,
429 with a JSON body when a quota is exhausted, 503 when the limiter fails
closed in production.
"""

import math
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from pingbuoy.app.core.config import settings
from pingbuoy.app.core.logging import get_log_context, get_logger
from pingbuoy.app.exceptions import (
    BackendUnreachableError,
    IdentifierBlockedError,
    RateLimitBackendError,
    RateLimitExceededError,
)
from pingbuoy.app.services.rate_limit import (
    RATE_LIMIT_CONFIGS,
    DualLimitResult,
    FailurePolicy,
    Plan,
    RateLimitConfig,
    RateLimitResult,
    get_rate_limit_config,
    get_user_config,
    has_user_scope,
    ip_identifier,
)

logger = get_logger(__name__)

BLOCKED_RETRY_AFTER_SECONDS = 3600


def get_client_ip(request: Request) -> str:
    """Resolve the caller's address.

    Priority: CF-Connecting-IP > X-Real-IP > first X-Forwarded-For entry >
    socket peer.
    """
    cf_ip = request.headers.get("CF-Connecting-IP", "").strip()
    if cf_ip:
        return cf_ip
    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def get_rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    """Quota headers for a limiter result.

    X-RateLimit-Reset is in epoch seconds; X-RateLimit-Window in seconds.
    """
    # window_start is now - window and reset_time is now + window
    window_seconds = math.ceil((result.reset_time - result.window_start) / 2000)
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(math.ceil(result.reset_time / 1000)),
        "X-RateLimit-Window": str(window_seconds),
    }
    if result.retry_after:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def rate_limit_response(
    result: RateLimitResult,
    message: str = "Rate limit exceeded",
) -> JSONResponse:
    """429 response carrying quota metadata in body and headers."""
    return JSONResponse(
        status_code=429,
        content={
            "error": message,
            "limit": result.limit,
            "remaining": result.remaining,
            "reset_time": result.reset_time,
            "retry_after": result.retry_after,
        },
        headers=get_rate_limit_headers(result),
    )


def blocked_result(retry_after: int = BLOCKED_RETRY_AFTER_SECONDS) -> RateLimitResult:
    now = int(time.time() * 1000)
    window_ms = retry_after * 1000
    return RateLimitResult(
        success=False,
        limit=0,
        remaining=0,
        reset_time=now + window_ms,
        retry_after=retry_after,
        total_hits=0,
        window_start=now - window_ms,
    )


def backend_unavailable_response(error: RateLimitBackendError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content={
            "error": "rate_limiting_unavailable",
            "message": "Rate limiting is temporarily unavailable. Please try again later.",
        },
        headers={"Retry-After": "30"},
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware enforcing the per-IP limit of one service class.

    Blocked addresses are rejected first. User-scoped limits need the
    authenticated principal and are enforced per route with
    ``enforce_rate_limit``.
    """

    def __init__(
        self,
        app,
        service: Optional[str] = None,
        ip_config: Optional[RateLimitConfig] = None,
        exempt_paths: Iterable[str] = ("/health",),
    ):
        super().__init__(app)
        self.service = service or settings.rate_limit_default_service
        self.ip_config = ip_config or get_rate_limit_config(self.service, "ip")
        self.exempt_paths = tuple(exempt_paths)

    def _is_exempt(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.exempt_paths)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if not settings.rate_limit_enabled or self._is_exempt(request.url.path):
            return await call_next(request)

        limiter = getattr(request.app.state, "rate_limiter", None)
        if limiter is None:
            logger.warning("Rate limiter not initialized; request passed through unchecked")
            return await call_next(request)

        ip = get_client_ip(request)
        identifier = ip_identifier(ip)

        if await limiter.is_blocked(identifier, self.service):
            logger.warning(
                "Blocked address rejected",
                extra=get_log_context(
                    request_id=getattr(request.state, "request_id", None),
                    identifier=identifier,
                    service=self.service,
                    client_ip=ip,
                    path=request.url.path,
                ),
            )
            return rate_limit_response(blocked_result(), "IP temporarily blocked due to abuse")

        try:
            result = await limiter.check_limit(identifier, self.ip_config, self.service)
        except RateLimitBackendError as e:
            return backend_unavailable_response(e)

        if not result.success:
            return rate_limit_response(result, "IP rate limit exceeded")

        # Route guards on the same service reuse this hit instead of counting again
        request.state.ip_rate_limit = (self.service, self.ip_config, result)
        response = await call_next(request)
        response.headers.update(get_rate_limit_headers(result))
        return response


async def enforce_rate_limit(
    request: Request,
    service: str,
    user_id: Optional[str] = None,
    plan: "Plan | str | None" = None,
    ip_config: Optional[RateLimitConfig] = None,
    user_config: Optional[RateLimitConfig] = None,
) -> DualLimitResult:
    """Dual IP + user check for a route handler.

    Configs default to the registry entries for ``service``; the user
    config is picked by plan for tiered services. Services without a user
    scope (``email`` counts recipients and senders instead) are checked
    per address only. When ``RateLimitMiddleware`` already counted this
    address for the same service and quota, that hit is reused.

    Raises:
        IdentifierBlockedError: If the caller's address is blocked
        RateLimitExceededError: If either scope is exhausted
        RateLimitBackendError: If the limiter fails closed
    """
    ip = get_client_ip(request)

    if ip_config is None:
        # User-only classes share the general API's per-address quota
        scopes = RATE_LIMIT_CONFIGS.get(service, {})
        ip_service = service if "ip" in scopes else settings.rate_limit_default_service
        ip_config = get_rate_limit_config(ip_service, "ip")
    if user_config is None and user_id and not has_user_scope(service):
        logger.debug(f"Service {service} has no user scope; checking address only")
        user_id = None
    if user_config is None:
        user_config = get_user_config(service, plan) if user_id else ip_config

    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        if settings.is_production:
            raise BackendUnreachableError("Rate limiter is not initialized")
        logger.warning(f"Rate limiter not initialized; {service} request allowed unchecked")
        now = int(time.time() * 1000)
        dual = DualLimitResult(
            ip=FailurePolicy.fail_open_result(ip_config, now),
            user=FailurePolicy.fail_open_result(user_config, now) if user_id else None,
        )
        request.state.rate_limit = dual.limiting_result
        return dual

    counted = getattr(request.state, "ip_rate_limit", None)
    if counted is not None and counted[0] == service and counted[1] == ip_config:
        # The middleware already checked blocks and recorded this address
        user_result = None
        if user_id:
            user_result = await limiter.check_user_limit(user_id, user_config, service)
        dual = DualLimitResult(ip=counted[2], user=user_result)
    else:
        if await limiter.is_blocked(ip_identifier(ip), service):
            raise IdentifierBlockedError(ip_identifier(ip), retry_after=BLOCKED_RETRY_AFTER_SECONDS)
        dual = await limiter.check_dual_limit(ip, user_id, ip_config, user_config, service)

    limiting = dual.limiting_result
    request.state.rate_limit = limiting

    if not dual.success:
        scope = "User" if limiting is dual.user else "IP"
        raise RateLimitExceededError(limiting, f"{scope} rate limit exceeded")
    return dual


def rate_limited(service: str) -> Callable[[Request], Awaitable[DualLimitResult]]:
    """FastAPI dependency factory applying ``enforce_rate_limit``.

    The authenticated principal is read from ``request.state.user_id`` and
    ``request.state.plan`` when an auth layer has set them.

    Example:
        >>> @router.post("/api/dead-links/scan")
        ... async def scan(limit: DualLimitResult = Depends(rate_limited("scanning"))):
        ...     ...
    """
    async def _dependency(request: Request) -> DualLimitResult:
        user_id: Any = getattr(request.state, "user_id", None)
        plan = getattr(request.state, "plan", None)
        return await enforce_rate_limit(
            request,
            service,
            user_id=str(user_id) if user_id else None,
            plan=plan,
        )

    return _dependency
