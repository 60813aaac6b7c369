from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantguard.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_FS_ROOT = "/srv/tenantguard"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a signing secret persisted under SHARED_FS_ROOT, creating it once.

    Tokens stay valid across restarts when no explicit secret is configured.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", _DEFAULT_FS_ROOT))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings resolved from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field(_DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(True, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("tenantguard", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantguard-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    mfa_token_ttl_minutes: int = env_field(5, "MFA_TOKEN_TTL_MINUTES")
    reset_token_ttl_minutes: int = env_field(10, "RESET_TOKEN_TTL_MINUTES")

    # MFA
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to JWT_SECRET",
    )
    mfa_issuer: str = env_field("TenantGuard", "MFA_ISSUER")

    # Sessions & maintenance
    session_retention_days: int = env_field(30, "SESSION_RETENTION_DAYS")
    maintenance_interval_seconds: int = env_field(
        24 * 60 * 60,
        "MAINTENANCE_INTERVAL_SECONDS",
        description="Interval between blacklist/session purge runs",
    )

    # HTTP
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Use the first X-Forwarded-For hop as the client address",
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TenantGuard", "EMAIL_FROM_NAME")

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

    # Before mode: an unset secret arrives as None and is generated here
    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: Any) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_refresh_secret")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "mfa_token_ttl_minutes",
        "reset_token_ttl_minutes",
        "session_retention_days",
        "maintenance_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self):
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
