from __future__ import annotations

import os
from enum import Enum
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantguard.logging import get_logger
from tenantguard.service.errors import ConfigurationError

logger = get_logger(__name__)

# HMAC algorithms accepted for signing; anything else is refused outright.
ALLOWED_ALGORITHMS = ("HS256", "HS384", "HS512")

MIN_SIGNING_KEY_LENGTH = 32


class GuardDriver(str, Enum):
    """Authentication strategy active for a deployment profile."""

    TOKEN = "token"
    SESSION = "session"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, guards, lockouts and 2FA."""

    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    jwt_issuer: str = env_field("tenantguard", "JWT_ISSUER")
    jwt_audience: Optional[str] = env_field(None, "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        ge=0,
        le=300,
        description="Clock skew tolerated on nbf/exp checks",
    )
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS", gt=0)
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    two_factor_token_ttl_seconds: int = env_field(
        300,
        "TWO_FACTOR_TOKEN_TTL_SECONDS",
        gt=0,
        description="Lifetime of the temporary token issued while 2FA is pending",
    )
    password_reset_ttl_seconds: int = env_field(3600, "PASSWORD_RESET_TTL_SECONDS", gt=0)

    auth_guard: GuardDriver = env_field(GuardDriver.TOKEN, "AUTH_GUARD")
    session_ttl_seconds: int = env_field(2 * 3600, "SESSION_TTL_SECONDS", gt=0)
    remember_ttl_seconds: int = env_field(30 * 24 * 3600, "REMEMBER_TTL_SECONDS", gt=0)

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", gt=0)
    lockout_seconds: int = env_field(15 * 60, "LOCKOUT_SECONDS", gt=0)
    origin_max_attempts: int = env_field(
        50,
        "ORIGIN_MAX_ATTEMPTS",
        gt=0,
        description="Failures tolerated from one origin across all identities",
    )
    failure_alert_threshold: int = env_field(10, "FAILURE_ALERT_THRESHOLD", gt=0)
    origin_alert_threshold: int = env_field(50, "ORIGIN_ALERT_THRESHOLD", gt=0)
    origin_decay_factor: float = env_field(
        0.5,
        "ORIGIN_DECAY_FACTOR",
        gt=0,
        lt=1,
        description="Fraction of the origin counter kept after a successful login",
    )

    two_factor_issuer: str = env_field("ERP Sistema", "TWO_FACTOR_ISSUER")
    two_factor_window: int = env_field(1, "TWO_FACTOR_WINDOW", ge=0, le=1)
    two_factor_digits: int = env_field(6, "TWO_FACTOR_DIGITS", ge=6, le=8)
    two_factor_period: int = env_field(30, "TWO_FACTOR_PERIOD", gt=0)
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT", gt=0, le=20)
    mfa_secret_key: Optional[str] = env_field(None, "MFA_SECRET_KEY")

    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=8)
    password_require_mixed_case: bool = env_field(True, "PASSWORD_REQUIRE_MIXED_CASE")
    password_require_number: bool = env_field(True, "PASSWORD_REQUIRE_NUMBER")

    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    redis_sync_client: bool = env_field(False, "REDIS_SYNC_CLIENT")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("jwt_secret")
    @classmethod
    def _validate_jwt_secret(cls, value: Optional[str]) -> str:
        if not value:
            logger.error("jwt_secret_missing")
            raise ConfigurationError("JWT_SECRET must be set")
        if len(value) < MIN_SIGNING_KEY_LENGTH:
            logger.error("jwt_secret_too_short", length=len(value))
            raise ConfigurationError(
                f"JWT_SECRET must be at least {MIN_SIGNING_KEY_LENGTH} characters"
            )
        return value

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        normalized = (value or "").upper()
        if normalized not in ALLOWED_ALGORITHMS:
            logger.error("jwt_algorithm_not_allowed", algorithm=value)
            raise ConfigurationError(f"unsupported signing algorithm: {value}")
        return normalized

    @field_validator("auth_guard", mode="before")
    @classmethod
    def _validate_guard(cls, value: Any) -> GuardDriver:
        try:
            return GuardDriver(str(getattr(value, "value", value)).lower())
        except ValueError as exc:
            raise ConfigurationError(f"unknown auth guard: {value}") from exc

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
