"""Core utilities for the PingBuoy application."""

from pingbuoy.app.core.config import settings
from pingbuoy.app.core.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
]
