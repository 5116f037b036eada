"""API endpoints package for the rate limiting service."""

from pingbuoy.app.api.health import router as health_router

__all__ = [
    "health_router",
]
