from __future__ import annotations

import json
import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_SYMMETRIC_KEY_LENGTH = 32


class Environment(str, Enum):
    """Deployment environments; production enables Secure cookies and the /api prefix."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


class RateLimitRule(BaseModel):
    """Quota for one rate-limited endpoint."""

    limit: int
    window_seconds: int = 60

    model_config = ConfigDict(extra="ignore")


DEFAULT_RATE_LIMITS: dict[str, dict[str, int]] = {
    "generate-desc": {"limit": 5, "window_seconds": 24 * 60 * 60},
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Run against in-memory backends with deterministic behaviour.",
    )

    token_symmetric_key: str = env_field(
        None, "TOKEN_SYMMETRIC_KEY", validate_default=True
    )
    token_previous_keys: list[str] = env_field(
        [],
        "TOKEN_PREVIOUS_KEYS",
        description="Comma separated retired keys still accepted for verification",
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    block_session_on_logout: bool = env_field(
        True,
        "BLOCK_SESSION_ON_LOGOUT",
        description="Mark the server-side session blocked when the user logs out",
    )

    reset_code_length: int = env_field(6, "RESET_CODE_LENGTH")
    reset_code_ttl_seconds: int = env_field(600, "RESET_CODE_TTL_SECONDS")
    reset_token_ttl_seconds: int = env_field(900, "RESET_TOKEN_TTL_SECONDS")
    reset_request_cooldown_seconds: int = env_field(
        60, "RESET_REQUEST_COOLDOWN_SECONDS"
    )
    reset_confirm_max_attempts: int = env_field(5, "RESET_CONFIRM_MAX_ATTEMPTS")

    private_invite_ttl_minutes: int = env_field(60, "PRIVATE_INVITE_TTL_MINUTES")

    rate_limits: dict[str, RateLimitRule] = env_field(
        DEFAULT_RATE_LIMITS,
        "RATE_LIMITS",
        validate_default=True,
        description='JSON object, e.g. {"generate-desc": {"limit": 5, "window_seconds": 86400}}',
    )

    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatehouse", "EMAIL_FROM_NAME")

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

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("token_symmetric_key", mode="before")
    @classmethod
    def _validate_symmetric_key(cls, value: Any) -> str:
        if not value:
            raise ValueError("TOKEN_SYMMETRIC_KEY must be set")
        if len(value) < MIN_SYMMETRIC_KEY_LENGTH:
            raise ValueError(
                f"TOKEN_SYMMETRIC_KEY must be at least {MIN_SYMMETRIC_KEY_LENGTH} characters"
            )
        return value

    @field_validator("token_previous_keys", mode="before")
    @classmethod
    def _split_previous_keys(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return list(value)

    @field_validator("reset_code_length")
    @classmethod
    def _validate_code_length(cls, value: int) -> int:
        if not 1 <= value <= 9:
            raise ValueError("RESET_CODE_LENGTH must be between 1 and 9")
        return value

    @field_validator("rate_limits", mode="before")
    @classmethod
    def _parse_rate_limits(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"RATE_LIMITS is not valid JSON: {exc}") from exc
        if not isinstance(value, dict):
            raise ValueError("RATE_LIMITS must be a JSON object")
        return value

    def rate_limit_rule(self, name: str) -> RateLimitRule | None:
        return self.rate_limits.get(name)
