from __future__ import annotations

import os
import re
import secrets
import tempfile
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sevr.logging import get_logger

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}
DEFAULT_DURATION = timedelta(minutes=15)


def parse_duration(text: str | None) -> timedelta:
    """Parse ``"15m"``-style durations; anything unrecognised becomes 15 minutes."""
    match = _DURATION_RE.match((text or "").strip())
    if not match:
        return DEFAULT_DURATION
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit]


def parse_email_list(raw: str | None) -> frozenset[str]:
    if not raw:
        return frozenset()
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings read from the environment and ``.env``."""

    database_url: str = env_field("postgresql://localhost:5432/sevr", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sevr", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_persist: bool = env_field(
        True,
        "MEMORY_STORE_PERSIST",
        description="Snapshot the in-memory store to SHARED_FS_ROOT/state.",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables test-only hooks such as runtime reset.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sevr", "JWT_ISSUER")
    jwt_audience: str = env_field("sevr-clients", "JWT_AUDIENCE")
    jwt_expires_in: str = env_field(
        "15m", "JWT_EXPIRES_IN", description="Access token lifetime, e.g. 15m"
    )
    refresh_expires_in: str = env_field(
        "30d", "REFRESH_EXPIRES_IN", description="Refresh token lifetime, e.g. 30d"
    )
    admin_emails: str = env_field(
        "", "ADMIN_EMAILS", description="Comma-separated admin allowlist"
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sevr", "EMAIL_FROM_NAME")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    rate_limit_requests: int = env_field(100, "RATE_LIMIT_REQUESTS")
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")
    max_body_bytes: int = env_field(10 * 1024, "MAX_BODY_BYTES")

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

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sevr"))
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
        tmp_path: str | None = None
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
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def email_delivery_configured(self) -> bool:
        return bool(self.smtp_host and (self.email_from_address or self.smtp_user))


@dataclass(frozen=True)
class AuthConfig:
    """Explicit configuration handed to the token and auth services.

    Services never read the environment; the runtime builds this once from
    :class:`Settings` (or tests build it directly).
    """

    signing_secret: str
    access_token_ttl: timedelta = timedelta(minutes=15)
    refresh_token_ttl: timedelta = timedelta(days=30)
    admin_allowlist: frozenset[str] = frozenset()
    issuer: str = "sevr"
    audience: str = "sevr-clients"

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthConfig":
        return cls(
            signing_secret=settings.jwt_secret,
            access_token_ttl=parse_duration(settings.jwt_expires_in),
            refresh_token_ttl=parse_duration(settings.refresh_expires_in),
            admin_allowlist=parse_email_list(settings.admin_emails),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )

    def is_admin_email(self, email: str) -> bool:
        return email.strip().lower() in self.admin_allowlist


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
