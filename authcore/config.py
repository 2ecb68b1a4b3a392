from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than this are rejected at startup
MIN_JWT_SECRET_BYTES = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-level settings read from the environment and ``.env``.

    Operator-tunable security thresholds (IP blocking, session limits) are
    not here; they live in the settings store and are loaded through
    :class:`authcore.service.security_settings.SecuritySettingsService`.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        False,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to SHARED_FS_ROOT/state between restarts",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI: sync Redis client, runtime resets allowed.",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    refresh_token_retention_days: int = env_field(
        30,
        "REFRESH_TOKEN_RETENTION_DAYS",
        description="Revoked or expired refresh tokens older than this are purged",
    )
    reuse_ledger_ttl_hours: int = env_field(24, "REUSE_LEDGER_TTL_HOURS")
    token_cache_refresh_threshold_seconds: int = env_field(
        30, "TOKEN_CACHE_REFRESH_THRESHOLD_SECONDS"
    )
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")

    geo_lookup_enabled: bool = env_field(True, "GEO_LOOKUP_ENABLED")
    geo_lookup_url: str = env_field("http://ip-api.com/json", "GEO_LOOKUP_URL")
    geo_lookup_timeout_seconds: float = env_field(3.0, "GEO_LOOKUP_TIMEOUT_SECONDS")

    sweep_interval_seconds: int = env_field(300, "SWEEP_INTERVAL_SECONDS")
    sweeper_enabled: bool = env_field(True, "SWEEPER_ENABLED")
    failed_attempt_retention_days: int = env_field(30, "FAILED_ATTEMPT_RETENTION_DAYS")
    login_rate_limit_per_minute: int = env_field(
        30,
        "LOGIN_RATE_LIMIT_PER_MINUTE",
        description="Token bucket size for login requests per client IP",
    )

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authcore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as the client IP (behind a proxy only)",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value.encode()) < MIN_JWT_SECRET_BYTES:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_BYTES} bytes for HS256"
                )
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authcore"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted.encode()) >= MIN_JWT_SECRET_BYTES:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
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
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
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
