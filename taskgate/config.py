from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from taskgate.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FS_ROOT = "/srv/taskgate"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(fs_root: Path, filename: str) -> str:
    """Read a persisted signing secret or generate one with 0600 permissions."""
    secret_path = fs_root / filename
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g. in a container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and `.env`."""

    database_url: str | None = env_field(None, "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field(DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: sync Redis client, in-process fallbacks allowed.",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("taskgate", "JWT_ISSUER")
    jwt_audience: str = env_field("taskgate-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS")
    access_token_ttl_seconds: int = env_field(
        7 * 24 * 3600,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Access token lifetime; revocation relies on the password epoch check",
    )
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 3600,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Refresh token lifetime after register, refresh, and remember-me login",
    )
    short_refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600,
        "SHORT_REFRESH_TOKEN_TTL_SECONDS",
        description="Refresh token lifetime for login without remember-me",
    )

    # Password hashing (argon2id)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # Login lockout
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")

    # Rate limits
    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_seconds: int = env_field(900, "RATE_LIMIT_WINDOW_SECONDS")
    auth_rate_limit_max_requests: int = env_field(5, "AUTH_RATE_LIMIT_MAX_REQUESTS")
    auth_rate_limit_window_seconds: int = env_field(900, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_sweep_interval_seconds: int = env_field(60, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS")

    # One-time tokens
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    request_timeout_seconds: float = env_field(
        10.0,
        "REQUEST_TIMEOUT_SECONDS",
        description="Upper bound for password hashing and health probes",
    )
    api_key: str | None = env_field(None, "API_KEY")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Key rate limits on the first X-Forwarded-For entry; enable only behind a proxy that sets it",
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Task Manager", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

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
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = Path(info.data.get("shared_fs_root") or DEFAULT_FS_ROOT)
        return _load_or_create_secret(fs_root, ".jwt_secret")

    @field_validator("jwt_refresh_secret")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = Path(info.data.get("shared_fs_root") or DEFAULT_FS_ROOT)
        return _load_or_create_secret(fs_root, ".jwt_refresh_secret")

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "short_refresh_token_ttl_seconds",
        "lockout_max_attempts",
        "lockout_duration_minutes",
        "email_verification_ttl_hours",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
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
