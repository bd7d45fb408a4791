from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from gatehide.logging import get_logger

logger = get_logger(__name__)

# Secrets shorter than this are rejected outright
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    app_name: str = env_field("GateHide API", "APP_NAME")
    app_base_url: str = env_field(
        "http://localhost:3000",
        "APP_BASE_URL",
        description="Frontend origin used to build reset and support links",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/gatehide", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Directory for the in-memory store's JSON snapshot; unset keeps state in RAM only",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as generated JWT secrets.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("gatehide-api", "JWT_ISSUER")
    jwt_expiration_hours: int = env_field(
        24, "JWT_EXPIRATION_HOURS", description="Standard bearer token lifetime", ge=1
    )
    remember_me_ttl_days: int = env_field(
        7,
        "REMEMBER_ME_TTL_DAYS",
        description="Token lifetime when the caller asks to be remembered",
        ge=1,
    )
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Allowance for clock skew between nodes when checking exp/nbf",
        ge=0,
    )
    refresh_max_lifetime_days: int = env_field(
        30,
        "REFRESH_MAX_LIFETIME_DAYS",
        description="Cap on how long a login can be kept alive through refreshes; 0 disables",
        ge=0,
    )
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    email_verification_ttl_minutes: int = env_field(
        10, "EMAIL_VERIFICATION_TTL_MINUTES", ge=1
    )
    verification_code_length: int = env_field(
        6, "VERIFICATION_CODE_LENGTH", ge=4, le=12
    )
    min_password_length: int = env_field(6, "MIN_PASSWORD_LENGTH", ge=1)
    session_sweep_interval_seconds: int = env_field(
        3600,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="How often expired sessions, reset tokens and codes are purged; 0 disables",
        ge=0,
    )
    expose_verification_code: bool = env_field(
        False,
        "EXPOSE_VERIFICATION_CODE",
        description="Echo email verification codes in API responses. Local development only.",
    )
    # Notification settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("GateHide", "EMAIL_FROM_NAME")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")

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
    def expose_codes(self) -> bool:
        """Only echo verification codes when both dev flags agree."""
        return self.expose_verification_code and self.test_mode

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        if not info.data.get("test_mode"):
            raise ValueError("JWT_SECRET is required outside of TEST_MODE")
        # Tokens signed with an ephemeral secret do not survive restarts
        logger.warning("jwt_secret_generated", reason="test_mode")
        return secrets.token_urlsafe(64)


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
