"""Middleware package for PingBuoy."""

from pingbuoy.app.middleware.rate_limit import (
    RateLimitMiddleware,
    enforce_rate_limit,
    get_client_ip,
    get_rate_limit_headers,
    rate_limit_response,
    rate_limited,
)
from pingbuoy.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RateLimitMiddleware",
    "enforce_rate_limit",
    "get_client_ip",
    "get_rate_limit_headers",
    "rate_limit_response",
    "rate_limited",
    "RequestIdMiddleware",
    "get_request_id",
]
