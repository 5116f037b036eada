"""Redis configuration validation and connection health checks.

Gives operators actionable messages for the common misconfigurations:
missing URL, REST URL pasted where a Redis URL belongs, tokens with
stray whitespace, localhost in production.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pingbuoy.app.core.config import PRODUCTION, settings
from pingbuoy.app.core.logging import get_logger
from pingbuoy.app.exceptions import RateLimitBackendError
from pingbuoy.app.services.rate_limit.backend import KeyValueBackend

logger = get_logger(__name__)

REDIS_SCHEMES = ("redis", "rediss", "unix")
LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


@dataclass
class RedisConfigValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    provider: str = "unknown"

    def to_dict(self, include_suggestions: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "valid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "provider": self.provider,
        }
        if include_suggestions:
            data["suggestions"] = self.suggestions
        return data


@dataclass
class RedisHealthCheck:
    connected: bool
    latency_ms: Optional[int] = None
    error: Optional[str] = None
    version: Optional[str] = None
    memory: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "latency_ms": self.latency_ms,
            "error": self.error,
            "version": self.version,
            "memory": self.memory,
        }


def detect_provider(url: str) -> str:
    """Guess the hosting provider from a Redis URL."""
    host = (urlparse(url).hostname or "").lower()
    if host.endswith("upstash.io"):
        return "upstash"
    if "redislabs.com" in host or "redis.com" in host or "redis-cloud.com" in host:
        return "redis-cloud"
    if "amazonaws.com" in host:
        return "aws"
    if host in LOCAL_HOSTS:
        return "local"
    return "unknown"


class RedisConfigValidator:
    """Validates Redis settings and probes the live connection."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        token: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> None:
        self.redis_url = (settings.redis_url if redis_url is None else redis_url).strip()
        self.token = settings.redis_token if token is None else token
        self.environment = (environment or settings.environment).lower()

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    def validate_config(self) -> RedisConfigValidation:
        """Validate Redis URL and token.

        Returns:
            RedisConfigValidation listing errors, warnings and suggestions
        """
        if not self.redis_url:
            return RedisConfigValidation(
                is_valid=False,
                errors=["Redis rate limiting is not configured"],
                suggestions=[
                    "Set REDIS_URL, e.g. rediss://default:<password>@<host>:6379",
                    "Set REDIS_TOKEN if the password is not part of the URL",
                ],
            )

        provider = detect_provider(self.redis_url)
        errors: List[str] = []
        warnings: List[str] = []
        suggestions: List[str] = []

        self._validate_url(provider, errors, warnings, suggestions)
        if self.token:
            self._validate_token(provider, errors, warnings, suggestions)

        return RedisConfigValidation(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            suggestions=suggestions,
            provider=provider,
        )

    def _validate_url(
        self,
        provider: str,
        errors: List[str],
        warnings: List[str],
        suggestions: List[str],
    ) -> None:
        parsed = urlparse(self.redis_url)
        scheme = parsed.scheme.lower()

        if scheme in ("http", "https"):
            errors.append("REDIS_URL is an HTTP REST endpoint, not a Redis protocol URL")
            suggestions.append(
                "Use the rediss:// endpoint from your provider dashboard, not the REST URL"
            )
            return
        if scheme not in REDIS_SCHEMES:
            errors.append(f"Invalid Redis URL scheme: {scheme or '(none)'}")
            suggestions.append("URL should start with redis:// or rediss://")
            return
        if scheme != "unix" and not parsed.hostname:
            errors.append("Redis URL has no host")
            return

        if provider == "upstash" and not (parsed.password or self.token):
            errors.append("Upstash Redis requires a password")
            suggestions.append("Set REDIS_TOKEN or embed the password in REDIS_URL")

        if self.is_production:
            if provider == "local":
                errors.append("Using localhost Redis URL in production environment")
                suggestions.append("Use a managed Redis service such as Upstash or ElastiCache")
            elif scheme == "redis":
                warnings.append("Using plain redis:// (no TLS) in production")
                suggestions.append("Use rediss:// for encrypted connections in production")

    def _validate_token(
        self,
        provider: str,
        errors: List[str],
        warnings: List[str],
        suggestions: List[str],
    ) -> None:
        token = self.token
        if len(token) < 10:
            errors.append("Redis token appears to be too short")
            suggestions.append("Ensure you copied the complete token from your Redis dashboard")
        if any(ch in token for ch in (" ", "\n", "\t")):
            errors.append("Token contains whitespace characters")
            suggestions.append("Remove any spaces, tabs or newlines from the token")
        if token.startswith(("redis://", "rediss://", "http")):
            errors.append("Token appears to be a URL, not a token")
            suggestions.append("Use the password/token field from your dashboard, not the URL")
        if provider == "upstash" and not token.startswith("A"):
            warnings.append('Upstash tokens typically start with "A"')
        if self.is_production and len(token) < 20:
            warnings.append("Redis token appears to be too short for production use")

    async def health_check(self, backend: Optional[KeyValueBackend]) -> RedisHealthCheck:
        """Round-trip a throwaway key and report latency and server info."""
        validation = self.validate_config()
        if not validation.is_valid or backend is None:
            return RedisHealthCheck(
                connected=False,
                error=", ".join(validation.errors) or "Redis backend not initialized",
            )

        start = time.perf_counter()
        test_key = f"health-check:{int(time.time() * 1000)}"
        try:
            await backend.setex(test_key, 60, "test-value")
            value = await backend.get(test_key)
            await backend.delete(test_key)
        except RateLimitBackendError as e:
            return RedisHealthCheck(connected=False, error=e.message)
        latency_ms = int((time.perf_counter() - start) * 1000)

        if value != "test-value":
            return RedisHealthCheck(
                connected=False,
                error="Redis test operation failed - value mismatch",
            )

        version = None
        memory = None
        try:
            info = await backend.info()
        except RateLimitBackendError as e:
            # INFO is disabled on some managed services
            logger.debug(f"Redis INFO unavailable: {e.message}")
            info = {}
        if info.get("redis_version"):
            version = str(info["redis_version"])
        if "used_memory_human" in info and "used_memory_peak_human" in info:
            memory = {
                "used": str(info["used_memory_human"]),
                "peak": str(info["used_memory_peak_human"]),
            }

        return RedisHealthCheck(
            connected=True,
            latency_ms=latency_ms,
            version=version,
            memory=memory,
        )
