from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from findclass.logging import get_logger

logger = get_logger(__name__)


class StorageBackend(str, Enum):
    """Persistence adapters the runtime can be wired with."""

    MEMORY = "memory"
    POSTGRES = "postgres"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, built once and handed to every component."""

    storage_backend: StorageBackend = env_field(StorageBackend.POSTGRES, "STORAGE_BACKEND")
    database_url: str = env_field(
        "postgresql://localhost:5432/findclass", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/findclass", "SHARED_FS_ROOT")
    persist_memory_store: bool = env_field(
        False,
        "PERSIST_MEMORY_STORE",
        description="Write memory store state to SHARED_FS_ROOT so it survives restarts",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables test-only hooks such as runtime reset",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("findclass.nz-api", "JWT_ISSUER")
    jwt_audience: str = env_field("findclass-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Lifetime of a session row and its refresh token",
    )
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry claims",
    )

    verification_code_ttl_seconds: int = env_field(300, "VERIFICATION_CODE_TTL_SECONDS")
    verification_send_limit: int = env_field(
        3,
        "VERIFICATION_SEND_LIMIT",
        description="Codes that may be issued per email and purpose inside one window",
    )
    verification_send_window_seconds: int = env_field(60, "VERIFICATION_SEND_WINDOW_SECONDS")

    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    login_rate_limit_per_minute: int = env_field(
        10,
        "LOGIN_RATE_LIMIT_PER_MINUTE",
        description="Login and signup attempts allowed per client address each minute; 0 disables",
    )

    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    default_language: str = env_field("zh", "DEFAULT_LANGUAGE")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("FindClass", "EMAIL_FROM_NAME")
    cors_allow_origins: str = env_field(
        "http://localhost:3000",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed browser origins",
    )

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
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator("storage_backend")
    @classmethod
    def _validate_backend(cls, value: StorageBackend) -> StorageBackend:
        return StorageBackend(value)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "verification_code_ttl_seconds",
        "verification_send_limit",
        "verification_send_window_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/findclass"))
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
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

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
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
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
