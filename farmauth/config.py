from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from farmauth.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than the digest size weaken the signature.
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/farmauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_root: str | None = env_field(
        None,
        "MEMORY_STORE_ROOT",
        description="Directory where the memory store persists accounts between restarts",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    app_name: str = env_field("FarmConnect", "APP_NAME")

    # Token signing
    access_token_secret: str | None = env_field(
        None, "ACCESS_TOKEN_SECRET", validate_default=True
    )
    refresh_token_secret: str | None = env_field(
        None, "REFRESH_TOKEN_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("farmauth", "JWT_ISSUER")
    jwt_audience: str = env_field("farmauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", description="Access token TTL in minutes"
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token TTL in minutes",
    )

    # OTP challenges
    otp_length: int = env_field(4, "OTP_LENGTH", ge=4, le=10)
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", ge=1)
    otp_retention_minutes: int = env_field(
        60,
        "OTP_RETENTION_MINUTES",
        description="How long an expired challenge lingers in Redis before the key is evicted",
    )
    dispatch_timeout_seconds: float = env_field(10.0, "DISPATCH_TIMEOUT_SECONDS", gt=0)

    # SMS gateway
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_api_key: str | None = env_field(None, "SMS_GATEWAY_API_KEY")
    sms_sender_id: str = env_field("FARMCN", "SMS_SENDER_ID")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("access_token_secret", "refresh_token_secret")
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        env_name = info.field_name.upper()
        if not value:
            raise ValueError(f"{env_name} must be set")
        if len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"{env_name} must be at least {MIN_SECRET_LENGTH} characters"
            )
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError(
                "ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ"
            )
        return self


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
