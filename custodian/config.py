from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from custodian.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core.

    Every policy value (TTLs, bounds, windows, thresholds) lives here so that
    deployments tune behaviour without touching call sites.
    """

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_cache: bool = env_field(False, "USE_MEMORY_CACHE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; allows ephemeral secrets.",
    )
    store_timeout_seconds: float = env_field(
        2.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for a single session-cache round trip",
    )
    store_retry_budget: int = env_field(
        1,
        "STORE_RETRY_BUDGET",
        description="Retries after a timed out cache call before StoreUnavailable",
    )

    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("custodian-api", "JWT_ISSUER")
    jwt_audience: str = env_field("custodian-client", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    # Sessions
    session_encryption_key: str | None = env_field(None, "SESSION_ENCRYPTION_KEY")
    session_idle_ttl_minutes: int = env_field(24 * 60, "SESSION_IDLE_TTL_MINUTES")
    session_absolute_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "SESSION_ABSOLUTE_TTL_MINUTES",
        description="Hard lifetime cap regardless of activity",
    )
    remember_me_absolute_ttl_minutes: int = env_field(
        30 * 24 * 60, "REMEMBER_ME_ABSOLUTE_TTL_MINUTES"
    )
    max_concurrent_sessions: int = env_field(5, "MAX_CONCURRENT_SESSIONS")

    # Primary authentication
    max_failed_attempts: int = env_field(5, "MAX_FAILED_ATTEMPTS")
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")

    # MFA
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")
    mfa_issuer: str = env_field("Custodian", "MFA_ISSUER")
    mfa_totp_window: int = env_field(1, "MFA_TOTP_WINDOW")
    mfa_totp_interval_seconds: int = env_field(30, "MFA_TOTP_INTERVAL_SECONDS")
    mfa_otp_ttl_minutes: int = env_field(10, "MFA_OTP_TTL_MINUTES")
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT")
    mfa_rate_limit_attempts: int = env_field(5, "MFA_RATE_LIMIT_ATTEMPTS")
    mfa_rate_limit_window_minutes: int = env_field(15, "MFA_RATE_LIMIT_WINDOW_MINUTES")
    mfa_recent_window_minutes: int = env_field(
        30,
        "MFA_RECENT_WINDOW_MINUTES",
        description="How long a step-up satisfies sensitive operations",
    )

    # Trusted devices
    trusted_device_ttl_days: int = env_field(90, "TRUSTED_DEVICE_TTL_DAYS")
    trusted_device_max_ips: int = env_field(
        6,
        "TRUSTED_DEVICE_MAX_IPS",
        description="Distinct IPs (current included) that make a device untrusted",
    )
    trusted_device_ip_window_days: int = env_field(7, "TRUSTED_DEVICE_IP_WINDOW_DAYS")
    trusted_device_incident_window_hours: int = env_field(
        24, "TRUSTED_DEVICE_INCIDENT_WINDOW_HOURS"
    )
    trusted_device_dormancy_days: int = env_field(30, "TRUSTED_DEVICE_DORMANCY_DAYS")
    trusted_device_registration_window_minutes: int = env_field(
        10, "TRUSTED_DEVICE_REGISTRATION_WINDOW_MINUTES"
    )

    # Risk
    risk_threshold_medium: int = env_field(50, "RISK_THRESHOLD_MEDIUM")
    risk_threshold_high: int = env_field(75, "RISK_THRESHOLD_HIGH")
    risk_threshold_critical: int = env_field(90, "RISK_THRESHOLD_CRITICAL")
    risk_cache_ttl_seconds: int = env_field(300, "RISK_CACHE_TTL_SECONDS")
    risk_unusual_hours_enabled: bool = env_field(True, "RISK_UNUSUAL_HOURS_ENABLED")
    risk_timezone: str = env_field("UTC", "RISK_TIMEZONE")
    risk_rapid_request_limit: int = env_field(10, "RISK_RAPID_REQUEST_LIMIT")
    block_ip_failure_threshold: int = env_field(15, "BLOCK_IP_FAILURE_THRESHOLD")
    block_ip_minutes: int = env_field(60, "BLOCK_IP_MINUTES")
    block_principal_mfa_failure_threshold: int = env_field(
        10, "BLOCK_PRINCIPAL_MFA_FAILURE_THRESHOLD"
    )

    # Notifier
    notifier_webhook_url: str | None = env_field(None, "NOTIFIER_WEBHOOK_URL")
    notifier_api_key: str | None = env_field(None, "NOTIFIER_API_KEY")
    notifier_timeout_seconds: float = env_field(5.0, "NOTIFIER_TIMEOUT_SECONDS")

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

    @field_validator("store_retry_budget")
    @classmethod
    def _bounded_retry_budget(cls, value: int) -> int:
        if value < 0 or value > 3:
            raise ValueError("store_retry_budget must be between 0 and 3")
        return value

    @field_validator("risk_threshold_critical")
    @classmethod
    def _critical_in_range(cls, value: int) -> int:
        if not 0 < value <= 100:
            raise ValueError("risk_threshold_critical must be within 1..100")
        return value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        for name in (
            "jwt_secret",
            "jwt_refresh_secret",
            "session_encryption_key",
            "mfa_encryption_key",
        ):
            value = getattr(self, name)
            if value:
                if len(value) < MIN_SECRET_LENGTH:
                    raise ValueError(f"{name} must be at least {MIN_SECRET_LENGTH} characters")
                continue
            if not self.test_mode:
                raise ValueError(f"{name.upper()} must be set outside TEST_MODE")
            logger.warning("ephemeral_secret_generated", setting=name)
            setattr(self, name, secrets.token_urlsafe(48))
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if self.session_absolute_ttl_minutes < self.session_idle_ttl_minutes:
            raise ValueError("session_absolute_ttl_minutes must not be below the idle TTL")
        if not (
            self.risk_threshold_medium
            < self.risk_threshold_high
            < self.risk_threshold_critical
        ):
            raise ValueError("risk thresholds must be strictly increasing")
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
