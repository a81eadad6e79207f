from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from credvault.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(fs_root: Path, filename: str) -> str:
    """Return a secret persisted under ``fs_root``, generating it once."""
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # directory may be owned by another user inside containers
        logger.warning("secret_dir_permissions_unchanged", path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret via environment or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Immutable runtime settings, injected into every component."""

    database_url: str = env_field(
        "postgresql://localhost:5432/credvault", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/credvault", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables runtime resets used by the test suite.",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for any single credential store operation",
    )

    # Signing
    access_token_secret: str = env_field(None, "ACCESS_TOKEN_SECRET", validate_default=True)
    refresh_token_secret: str = env_field(None, "REFRESH_TOKEN_SECRET", validate_default=True)
    jwt_issuer: str = env_field("credvault", "JWT_ISSUER")
    jwt_audience: str = env_field("credvault-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0)
    max_refresh_tokens_per_user: int = env_field(
        10,
        "MAX_REFRESH_TOKENS_PER_USER",
        ge=1,
        description="Oldest refresh tokens beyond this count are dropped on issue",
    )

    # Lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(120, "LOCKOUT_MINUTES", ge=1)

    # One-time tokens
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1)
    password_reset_ttl_minutes: int = env_field(10, "PASSWORD_RESET_TTL_MINUTES", ge=1)

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Credvault", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # HTTP
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    cors_allow_origins: str = env_field(
        "http://localhost:3000",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed origins",
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls, **overrides: Any) -> "Settings":
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
        merged.update(overrides)
        return cls(**merged)

    @field_validator("access_token_secret", mode="before")
    @classmethod
    def _ensure_access_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = Path(info.data.get("shared_fs_root", "/srv/credvault"))
        return _load_or_create_secret(fs_root, ".access_token_secret")

    @field_validator("refresh_token_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = Path(info.data.get("shared_fs_root", "/srv/credvault"))
        return _load_or_create_secret(fs_root, ".refresh_token_secret")

    @model_validator(mode="after")
    def _secrets_must_differ(self) -> "Settings":
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


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
