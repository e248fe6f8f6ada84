from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantgate.logging import get_logger

logger = get_logger(__name__)


class KeyBackendKind(str, Enum):
    """Signing backends the key manager can run on."""

    SOFTWARE = "software"
    HSM = "hsm"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantgate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Keep rate-limit windows in process memory; single-process development and tests only",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Token issuance
    jwt_issuer: str = env_field("tenantgate", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantgate-api", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS"
    )
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Allowance for clock skew when checking token expiry",
    )
    refresh_token_rotation: bool = env_field(
        False,
        "REFRESH_TOKEN_ROTATION",
        description="Issue a new refresh token on every refresh and revoke the presented one",
    )
    refresh_fingerprint_key: str | None = env_field(None, "REFRESH_FINGERPRINT_KEY")

    # Signing keys
    key_backend: KeyBackendKind = env_field(KeyBackendKind.SOFTWARE, "KEY_BACKEND")
    key_size: int = env_field(2048, "KEY_SIZE")
    signing_key_path: str | None = env_field(None, "SIGNING_KEY_PATH")
    hsm_url: str | None = env_field(None, "HSM_URL")
    hsm_api_key: str | None = env_field(None, "HSM_API_KEY")
    hsm_key_id: str | None = env_field(
        None,
        "HSM_KEY_ID",
        description="Existing HSM key every instance signs with at start-up; a new key is generated when unset",
    )
    hsm_timeout_seconds: float = env_field(5.0, "HSM_TIMEOUT_SECONDS")
    key_retention_seconds: int | None = env_field(
        None,
        "KEY_RETENTION_SECONDS",
        description="How long a rotated-out key stays verifiable; defaults to the refresh token TTL",
    )
    max_retained_keys: int = env_field(3, "MAX_RETAINED_KEYS")

    # Password lockout and login throttling
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_window_seconds: int = env_field(15 * 60, "LOGIN_WINDOW_SECONDS")
    login_block_seconds: int = env_field(30 * 60, "LOGIN_BLOCK_SECONDS")
    account_lock_minutes: int = env_field(30, "ACCOUNT_LOCK_MINUTES")

    # One-time passcodes
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_seconds: int = env_field(5 * 60, "OTP_TTL_SECONDS")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")
    otp_rate_limit_per_hour: int = env_field(3, "OTP_RATE_LIMIT_PER_HOUR")
    otp_pepper: str | None = env_field(None, "OTP_PEPPER")

    # WhatsApp notifier (falls back to logging when not configured)
    whatsapp_api_url: str | None = env_field(None, "WHATSAPP_API_URL")
    whatsapp_api_token: str | None = env_field(None, "WHATSAPP_API_TOKEN")
    whatsapp_template: str = env_field("tenantgate_otp", "WHATSAPP_TEMPLATE")
    whatsapp_language: str = env_field("es", "WHATSAPP_LANGUAGE")

    # Dependency deadlines
    notifier_timeout_seconds: float = env_field(10.0, "NOTIFIER_TIMEOUT_SECONDS")
    cache_timeout_seconds: float = env_field(3.0, "CACHE_TIMEOUT_SECONDS")
    db_timeout_seconds: float = env_field(5.0, "DB_TIMEOUT_SECONDS")
    request_timeout_seconds: float = env_field(15.0, "REQUEST_TIMEOUT_SECONDS")

    # Background maintenance
    maintenance_interval_seconds: int = env_field(
        3600,
        "MAINTENANCE_INTERVAL_SECONDS",
        description="How often expired refresh records and OTP challenges are swept",
    )
    key_rotation_interval_seconds: int = env_field(
        0,
        "KEY_ROTATION_INTERVAL_SECONDS",
        description="Rotate the signing key on this schedule; 0 disables scheduled rotation",
    )

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
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("key_backend", mode="before")
    @classmethod
    def _validate_key_backend(cls, value: Any) -> KeyBackendKind:
        if isinstance(value, str):
            value = value.strip().lower()
        return KeyBackendKind(value)

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "login_max_attempts",
        "login_window_seconds",
        "login_block_seconds",
        "account_lock_minutes",
        "otp_ttl_seconds",
        "otp_max_attempts",
        "otp_rate_limit_per_hour",
        "max_retained_keys",
        "maintenance_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("key_rotation_interval_seconds")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("otp_length")
    @classmethod
    def _clamp_otp_length(cls, value: int) -> int:
        return min(8, max(4, value))

    @field_validator("key_size")
    @classmethod
    def _validate_key_size(cls, value: int) -> int:
        if value < 2048:
            raise ValueError("RSA signing keys must be at least 2048 bits")
        return value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        if self.key_backend == KeyBackendKind.HSM and not self.hsm_url:
            raise ValueError("HSM_URL is required when KEY_BACKEND=hsm")
        for name in ("refresh_fingerprint_key", "otp_pepper"):
            if getattr(self, name):
                continue
            # Process-local secrets invalidate stored fingerprints on restart
            if not self.test_mode:
                logger.warning(
                    "ephemeral_secret_generated",
                    setting=name,
                    message="set it explicitly so every instance shares the same value",
                )
            setattr(self, name, secrets.token_urlsafe(48))
        return self

    @property
    def effective_key_retention_seconds(self) -> int:
        if self.key_retention_seconds is not None:
            return self.key_retention_seconds
        return self.refresh_token_ttl_seconds


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
