from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

SUPPORTED_JWT_ALGORITHMS = ("HS256", "HS384", "HS512")
MIN_SECRET_BYTES = 32

DEFAULT_PUBLIC_PATHS = (
    "/healthz",
    "/v1/auth/signup",
    "/v1/auth/login",
    "/v1/auth/refresh",
    "/v1/auth/validate",
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, session storage and the HTTP gate."""

    jwt_secret: str = env_field(
        None,
        "JWT_SECRET",
        validate_default=True,
        description="HMAC signing key; at least 32 bytes",
    )
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    access_token_ttl_seconds: int = env_field(60 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )
    default_device_id: str = env_field("default", "DEFAULT_DEVICE_ID")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    store_operation_timeout_seconds: float = env_field(
        2.0,
        "STORE_OPERATION_TIMEOUT_SECONDS",
        description="Upper bound for a single revocation or session store round-trip",
    )
    use_memory_cache: bool = env_field(False, "USE_MEMORY_CACHE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, runtime resets)",
    )
    public_paths: list[str] = env_field(
        list(DEFAULT_PUBLIC_PATHS),
        "PUBLIC_PATHS",
        description="Comma separated paths that bypass the request authenticator",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any) -> str:
        if not value or not isinstance(value, str):
            raise ValueError("JWT_SECRET must be set")
        if len(value.encode()) < MIN_SECRET_BYTES:
            raise ValueError(f"JWT_SECRET must be at least {MIN_SECRET_BYTES} bytes")
        return value

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        normalized = (value or "").upper()
        if normalized not in SUPPORTED_JWT_ALGORITHMS:
            raise ValueError(
                f"JWT_ALGORITHM must be one of: {', '.join(SUPPORTED_JWT_ALGORITHMS)}"
            )
        return normalized

    @field_validator("access_token_ttl_seconds", "refresh_token_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTLs must be positive")
        return value

    @field_validator("refresh_token_ttl_seconds")
    @classmethod
    def _refresh_outlives_access(cls, value: int, info: ValidationInfo) -> int:
        access_ttl = info.data.get("access_token_ttl_seconds")
        if access_ttl is not None and value < access_ttl:
            raise ValueError("refresh token TTL must not be shorter than access token TTL")
        return value

    @field_validator("store_operation_timeout_seconds", "redis_socket_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("default_device_id")
    @classmethod
    def _non_empty_device(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("DEFAULT_DEVICE_ID must not be empty")
        return value

    @field_validator("public_paths", mode="before")
    @classmethod
    def _split_paths(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
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
