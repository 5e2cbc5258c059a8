from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class EmailCodeFormat(str, Enum):
    """Shapes an emailed one-time code can take."""

    NUMERIC_6 = "numeric_6"
    NUMERIC_8 = "numeric_8"
    ALPHANUMERIC_6 = "alphanumeric_6"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class MfaMethod(str, Enum):
    """Second factors accepted by the verification step.

    TOTP and EMAIL are enrolment methods; BACKUP_CODE is a recovery path that
    is only accepted at verification time.
    """

    TOTP = "totp"
    EMAIL = "email"
    BACKUP_CODE = "backup_code"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration snapshot."""

    database_url: str = env_field(
        "postgresql://localhost:5432/aegisid", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and other deterministic test hooks.",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_key_id: str = env_field("primary", "JWT_KEY_ID")
    jwt_previous_keys: dict[str, str] = env_field(
        {},
        "JWT_PREVIOUS_KEYS",
        description="Retired signing keys still accepted for validation, as kid:secret pairs.",
    )
    jwt_issuer: str = env_field("auth-system", "JWT_ISSUER")
    jwt_audience: str = env_field("auth-system-api", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    refresh_token_ttl_remember_days: int = env_field(
        30, "REFRESH_TOKEN_TTL_REMEMBER_DAYS", ge=1
    )
    mfa_challenge_ttl_minutes: int = env_field(5, "MFA_CHALLENGE_TTL_MINUTES", ge=1)
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh token on every refresh and retire the old one.",
    )

    # Sessions
    session_inactivity_minutes: int = env_field(30, "SESSION_INACTIVITY_MINUTES", ge=1)
    session_absolute_days: int = env_field(7, "SESSION_ABSOLUTE_DAYS", ge=1)
    session_absolute_remember_days: int = env_field(
        30, "SESSION_ABSOLUTE_REMEMBER_DAYS", ge=1
    )
    session_cleanup_interval_seconds: int = env_field(
        3600, "SESSION_CLEANUP_INTERVAL_SECONDS", ge=1
    )

    # MFA
    enable_mfa: bool = env_field(True, "ENABLE_MFA")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")
    totp_issuer: str = env_field("AegisID", "TOTP_ISSUER")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS", ge=1)
    mfa_lockout_minutes: int = env_field(15, "MFA_LOCKOUT_MINUTES", ge=1)
    email_code_ttl_minutes: int = env_field(5, "EMAIL_CODE_TTL_MINUTES", ge=1)
    email_code_format: EmailCodeFormat = env_field(
        EmailCodeFormat.NUMERIC_6, "EMAIL_CODE_FORMAT"
    )
    email_resend_cooldown_seconds: int = env_field(
        30, "EMAIL_RESEND_COOLDOWN_SECONDS", ge=0
    )
    email_max_resend: int = env_field(3, "EMAIL_MAX_RESEND", ge=0)
    trusted_device_days: int = env_field(30, "TRUSTED_DEVICE_DAYS", ge=1)
    trusted_device_max_per_user: int = env_field(
        5, "TRUSTED_DEVICE_MAX_PER_USER", ge=1
    )

    # Security detection
    brute_force_threshold: int = env_field(5, "BRUTE_FORCE_THRESHOLD", ge=1)
    brute_force_window_minutes: int = env_field(15, "BRUTE_FORCE_WINDOW_MINUTES", ge=1)
    brute_force_dedupe_minutes: int = env_field(120, "BRUTE_FORCE_DEDUPE_MINUTES", ge=0)
    event_dedupe_minutes: int = env_field(60, "EVENT_DEDUPE_MINUTES", ge=0)
    new_device_alerts: bool = env_field(True, "NEW_DEVICE_ALERTS")

    # Passwords
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=8)
    password_hash_min_time_cost: int = env_field(2, "PASSWORD_HASH_MIN_TIME_COST", ge=1)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", description="Argon2 memory cost in KiB"
    )

    # Email dispatch
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AegisID", "EMAIL_FROM_NAME")
    email_send_timeout_seconds: float = env_field(10.0, "EMAIL_SEND_TIMEOUT_SECONDS", gt=0)

    # Geolocation
    geolocation_url: str | None = env_field(
        "http://ip-api.com/json/{ip}",
        "GEOLOCATION_URL",
        description="Lookup URL template; {ip} is substituted. Empty disables lookups.",
    )
    geolocation_timeout_seconds: float = env_field(5.0, "GEOLOCATION_TIMEOUT_SECONDS", gt=0)

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator("email_code_format")
    @classmethod
    def _validate_code_format(cls, value: EmailCodeFormat) -> EmailCodeFormat:
        return EmailCodeFormat(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_previous_keys", mode="before")
    @classmethod
    def _parse_previous_keys(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        keys: dict[str, str] = {}
        for pair in value.split(","):
            if not pair.strip():
                continue
            kid, sep, secret = pair.strip().partition(":")
            if not sep or not kid or not secret:
                raise ValueError("JWT_PREVIOUS_KEYS entries must look like kid:secret")
            keys[kid] = secret
        return keys

    @field_validator("jwt_secret")
    @classmethod
    def _check_jwt_secret(cls, value: str | None) -> str | None:
        if value is not None and len(value) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters")
        return value

    @field_validator("password_hash_time_cost")
    @classmethod
    def _check_time_cost(cls, value: int, info) -> int:
        floor = info.data.get("password_hash_min_time_cost")
        if floor is None:
            floor = 2
        if value < floor:
            raise ValueError(
                f"password_hash_time_cost must be at least {floor}"
            )
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
