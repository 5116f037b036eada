import json
import re
from typing import Annotated, Any

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


PRODUCTION = "production"
ENVIRONMENT_ALIASES = {
    "prod": PRODUCTION,
    "dev": "development",
    "local": "development",
    "stage": "staging",
}


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        return [str(v).strip() for v in raw if str(v).strip()]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # JSON list is the documented format; comma separated values also work
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(v).strip() for v in parsed if str(v).strip()]

    parts = [p.strip("[]\"'") for p in re.split(r"[,\s]+", raw)]
    if "*" in parts:
        return ["*"]
    return [p for p in parts if p]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Deployment environment - "production" turns on fail-closed rate limiting
    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("environment", "pingbuoy_env", "node_env"),
    )

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Redis settings
    redis_url: str = ""
    redis_token: str = ""  # Optional password / REST token for managed Redis

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_key_prefix: str = "ratelimit"
    rate_limit_backend_timeout_seconds: float = 2.0
    rate_limit_default_service: str = "api"

    # Browser origins allowed to read rate limit headers
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    # Admin token for protected health endpoints in production
    admin_token: str = ""

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> str:
        """Accept NODE_ENV style values regardless of case.

        Short forms like ``prod`` are expanded. Any other name is kept and
        treated as non-production.
        """
        value = str(v or "development").strip().lower() or "development"
        return ENVIRONMENT_ALIASES.get(value, value)

    @field_validator("rate_limit_backend_timeout_seconds")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate backend timeout is positive."""
        if v <= 0:
            raise ValueError("rate_limit_backend_timeout_seconds must be positive")
        return v

    @field_validator("rate_limit_key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("rate_limit_key_prefix must not be empty")
        return v

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("admin_token", "redis_token")
    @classmethod
    def strip_secrets(cls, v: str) -> str:
        return v.strip()

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
