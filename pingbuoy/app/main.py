from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pingbuoy.app.api.health import router as health_router
from pingbuoy.app.core.config import settings
from pingbuoy.app.core.logging import get_log_context, get_logger, setup_logging
from pingbuoy.app.exceptions import (
    IdentifierBlockedError,
    RateLimitBackendError,
    RateLimitConfigError,
    RateLimitExceededError,
)
from pingbuoy.app.middleware.rate_limit import (
    RateLimitMiddleware,
    backend_unavailable_response,
    blocked_result,
    rate_limit_response,
)
from pingbuoy.app.middleware.request_id import RequestIdMiddleware
from pingbuoy.app.services.rate_limit import (
    RedisBackend,
    RedisConfigValidator,
    SlidingWindowRateLimiter,
)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Validates the Redis configuration and builds the one backend and
        limiter shared by every request; closes the backend on shutdown.
        """
        app.state.rate_limit_backend = None
        app.state.rate_limiter = None

        validation = RedisConfigValidator().validate_config()
        if validation.is_valid:
            backend = RedisBackend(
                redis_url=settings.redis_url,
                token=settings.redis_token or None,
                timeout=settings.rate_limit_backend_timeout_seconds,
            )
            app.state.rate_limit_backend = backend
            app.state.rate_limiter = SlidingWindowRateLimiter(backend)
            for warning in validation.warnings:
                logger.warning(f"Redis configuration warning: {warning}")
        elif settings.is_production:
            logger.error(f"Invalid Redis configuration: {', '.join(validation.errors)}")
            raise RuntimeError("Rate limiting backend is not configured for production")
        else:
            logger.warning(
                f"Rate limiting disabled, Redis not configured: {', '.join(validation.errors)}"
            )

        logger.info(
            "Application startup complete",
            extra={
                "environment": settings.environment,
                "rate_limiting": app.state.rate_limiter is not None,
                "redis_provider": validation.provider,
            }
        )

        yield

        if app.state.rate_limit_backend is not None:
            await app.state.rate_limit_backend.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="PingBuoy Rate Limiting",
        description="Sliding window rate limiting for the PingBuoy monitoring API",
        version="1.0.0",
        lifespan=lifespan
    )

    # Add middleware (last added = first executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "X-RateLimit-Window",
            "Retry-After",
        ],
        max_age=600,
    )

    app.add_middleware(RateLimitMiddleware)

    # Outermost so rate limiting logs carry the request ID
    app.add_middleware(RequestIdMiddleware)

    app.include_router(health_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Liveness probe."""
        return {"status": "ok"}

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return rate_limit_response(exc.result, exc.message)

    @app.exception_handler(IdentifierBlockedError)
    async def identifier_blocked_handler(request: Request, exc: IdentifierBlockedError) -> JSONResponse:
        """Handle IdentifierBlockedError and return HTTP 429 response."""
        return rate_limit_response(blocked_result(exc.retry_after), exc.message)

    @app.exception_handler(RateLimitBackendError)
    async def backend_error_handler(request: Request, exc: RateLimitBackendError) -> JSONResponse:
        """Handle RateLimitBackendError (fail-closed) and return HTTP 503 response."""
        return backend_unavailable_response(exc)

    @app.exception_handler(RateLimitConfigError)
    async def config_error_handler(request: Request, exc: RateLimitConfigError) -> JSONResponse:
        """Handle RateLimitConfigError and return HTTP 500 response."""
        logger.error(
            f"Rate limit configuration error: {exc.message}",
            extra=get_log_context(
                request_id=getattr(request.state, "request_id", None),
                path=request.url.path,
            ),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "rate_limit_configuration_error",
                "message": exc.message if settings.debug else "Internal server error",
            }
        )

    return app


app = create_app()
