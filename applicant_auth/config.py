from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from applicant_auth.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the applicant auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/applicant_auth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_cache_fallback_dev: bool = env_field(
        False,
        "ALLOW_CACHE_FALLBACK_DEV",
        description="Run with an in-process cache when Redis is unreachable (single node only)",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, runtime reset)",
    )

    # Token service
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("applicant-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("job-applicant-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0, "JWT_LEEWAY_SECONDS", description="Clock skew tolerated when checking exp"
    )
    access_token_ttl_minutes: int = env_field(5 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    system_id: str = env_field("JOB_APPLICANT_SYSTEM", "SYSTEM_ID")

    # Brute-force guard
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_window_seconds: int = env_field(60, "LOGIN_WINDOW_SECONDS")
    login_guard_fail_open: bool = env_field(
        False,
        "LOGIN_GUARD_FAIL_OPEN",
        description="Allow logins without attempt counting while the cache is down",
    )

    # Activation / reset / SSO / OTP lifetimes
    activation_token_ttl_hours: int = env_field(24, "ACTIVATION_TOKEN_TTL_HOURS")
    activation_resend_ttl_minutes: int = env_field(15, "ACTIVATION_RESEND_TTL_MINUTES")
    resend_activation_cooldown_seconds: int = env_field(
        60, "RESEND_ACTIVATION_COOLDOWN_SECONDS"
    )
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    sso_proof_ttl_minutes: int = env_field(10, "SSO_PROOF_TTL_MINUTES")
    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES")
    otp_cooldown_seconds: int = env_field(60, "OTP_COOLDOWN_SECONDS")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")

    # Google identity verification
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_tokeninfo_url: str = env_field(
        "https://oauth2.googleapis.com/tokeninfo", "GOOGLE_TOKENINFO_URL"
    )

    # Outbound machine-to-machine credentials
    m2m_token_url: str | None = env_field(None, "M2M_TOKEN_URL")
    m2m_client_id: str | None = env_field(None, "M2M_CLIENT_ID")
    m2m_client_secret: str | None = env_field(None, "M2M_CLIENT_SECRET")
    m2m_scope: str | None = env_field(None, "M2M_SCOPE")
    m2m_expiry_buffer_seconds: int = env_field(60, "M2M_EXPIRY_BUFFER_SECONDS")
    m2m_single_flight: bool = env_field(True, "M2M_SINGLE_FLIGHT")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Job Applicant", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # HTTP surface
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: str = env_field("lax", "COOKIE_SAMESITE")
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("COOKIE_SAMESITE must be lax, strict or none")
        return normalized

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret and len(self.jwt_secret) >= _MIN_JWT_SECRET_LENGTH:
            return self
        if self.test_mode:
            logger.warning(
                "jwt_secret_weak",
                length=len(self.jwt_secret or ""),
                message="Accepting short JWT secret under TEST_MODE",
            )
            if not self.jwt_secret:
                self.jwt_secret = "test-mode-secret-" + "x" * _MIN_JWT_SECRET_LENGTH
            return self
        raise ValueError(
            f"JWT_SECRET must be set and at least {_MIN_JWT_SECRET_LENGTH} characters"
        )


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
