from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from otplogin.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_DATA_DIR = "/srv/otplogin"
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the OTP login service.

    Every field can be overridden through the environment variable named in
    its ``env`` extra, or through a ``.env`` file in the working directory.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/otplogin", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    data_dir: str = env_field(
        _DEFAULT_DATA_DIR,
        "DATA_DIR",
        description="Directory for the memory store snapshot and generated secrets",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relax infrastructure checks for local runs and CI",
    )
    cache_probe_interval_seconds: float = env_field(
        30.0,
        "CACHE_PROBE_INTERVAL_SECONDS",
        description="How long Redis stays bypassed after a failure before it is probed again",
    )
    revocation_sweep_interval_seconds: int = env_field(
        3600, "REVOCATION_SWEEP_INTERVAL_SECONDS"
    )

    # OTP challenge
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")

    # Bearer tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("otplogin", "JWT_ISSUER")
    jwt_audience: str = env_field("otplogin-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")

    # Request-volume buckets, capacity per window
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_otp_ip_per_minute: int = env_field(10, "RATE_LIMIT_OTP_IP_PER_MINUTE")
    rate_limit_otp_email_per_minute: int = env_field(
        5, "RATE_LIMIT_OTP_EMAIL_PER_MINUTE"
    )
    rate_limit_verify_ip_per_minute: int = env_field(
        20, "RATE_LIMIT_VERIFY_IP_PER_MINUTE"
    )
    rate_limit_signup_ip_per_minute: int = env_field(
        10, "RATE_LIMIT_SIGNUP_IP_PER_MINUTE"
    )
    rate_limit_signup_email_per_minute: int = env_field(
        5, "RATE_LIMIT_SIGNUP_EMAIL_PER_MINUTE"
    )
    rate_limit_logout_ip_per_minute: int = env_field(
        20, "RATE_LIMIT_LOGOUT_IP_PER_MINUTE"
    )

    # Failed-verification lockouts
    account_lockout_max_failures: int = env_field(5, "ACCOUNT_LOCKOUT_MAX_FAILURES")
    account_lockout_window_minutes: int = env_field(
        15, "ACCOUNT_LOCKOUT_WINDOW_MINUTES"
    )
    ip_lockout_max_failures: int = env_field(10, "IP_LOCKOUT_MAX_FAILURES")
    ip_lockout_window_minutes: int = env_field(15, "IP_LOCKOUT_WINDOW_MINUTES")

    # HTTP surface
    trust_forwarded_headers: bool = env_field(
        False,
        "TRUST_FORWARDED_HEADERS",
        description="Read the client address from X-Forwarded-For / X-Real-IP",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    problem_type_base: str = env_field(
        "https://example.com/problems", "PROBLEM_TYPE_BASE"
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("OTP Login", "EMAIL_FROM_NAME")

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
    def otp_ttl_seconds(self) -> int:
        return self.otp_ttl_minutes * 60

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60

    @field_validator(
        "otp_length",
        "otp_ttl_minutes",
        "otp_max_attempts",
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "rate_limit_window_seconds",
        "account_lockout_max_failures",
        "account_lockout_window_minutes",
        "ip_lockout_max_failures",
        "ip_lockout_window_minutes",
        "revocation_sweep_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Persist a generated secret so issued tokens survive restarts
        data_dir = Path(os.getenv("DATA_DIR", _DEFAULT_DATA_DIR))
        secret_path = data_dir / ".jwt_secret"

        try:
            data_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(data_dir, 0o700)
        except PermissionError:
            # Directory may be owned by another user inside a container
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(data_dir))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= _MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(data_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make DATA_DIR writable"
            ) from exc
        return generated


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
