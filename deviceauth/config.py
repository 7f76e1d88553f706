from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from deviceauth.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than the digest size weaken the signature
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the device session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/deviceauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for the memory store's JSON snapshot; unset keeps state in process only",
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    db_timeout_seconds: float = env_field(
        5.0,
        "DB_TIMEOUT_SECONDS",
        description="Seconds to wait for a pooled connection before reporting the store unavailable",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("deviceauth", "JWT_ISSUER")
    jwt_audience: str = env_field("deviceauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        30,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Validity of signed access tokens",
    )
    refresh_token_ttl_days: int = env_field(
        730,
        "REFRESH_TOKEN_TTL_DAYS",
        description="Fixed refresh window set once when a device registers",
    )
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Allowed clock skew when checking access token expiry",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def env_names(cls) -> dict[str, str]:
        """Map each field to the environment variable that configures it."""
        names = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra
            names[name] = (extra.get("env") if isinstance(extra, dict) else None) or name.upper()
        return names

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Build settings from the process environment, falling back to ``env_file``."""
        sources = {**dotenv_values(env_file), **os.environ}
        values = {
            field: sources[env_name]
            for field, env_name in cls.env_names().items()
            if sources.get(env_name) is not None
        }
        return cls(**values)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            logger.error("jwt_secret_too_short", length=len(value))
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator(
        "access_token_ttl_minutes", "refresh_token_ttl_days", "db_pool_max_size"
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_leeway_seconds", "db_pool_min_size")
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
