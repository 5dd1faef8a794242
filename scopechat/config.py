from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from scopechat.logging import get_logger

logger = get_logger(__name__)

# Fixed token lifetime: 7 days
DEFAULT_SESSION_TTL_MINUTES = 60 * 24 * 7


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the chat relay and its collaborators."""

    database_url: str = env_field(
        "postgresql://localhost:5432/scopechat", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/scopechat", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and an in-process denylist without Redis.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("scopechat", "JWT_ISSUER")
    jwt_audience: str = env_field("scopechat-clients", "JWT_AUDIENCE")
    session_ttl_minutes: int = env_field(
        DEFAULT_SESSION_TTL_MINUTES,
        "SESSION_TTL_MINUTES",
        description="Bearer token lifetime, fixed at issuance",
        gt=0,
    )
    # Upstream provider (service-level credential, never the end user's)
    llm_api_key: str | None = env_field(None, "LLM_API_KEY")
    llm_base_url: str | None = env_field(None, "LLM_BASE_URL")
    llm_model: str = env_field("gpt-4o-mini", "LLM_MODEL")
    llm_temperature: float = env_field(0.7, "LLM_TEMPERATURE", ge=0.0, le=2.0)
    upstream_timeout_seconds: float = env_field(
        60.0,
        "UPSTREAM_TIMEOUT_SECONDS",
        description="Ceiling for one completion request; exceeded calls are abandoned",
        gt=0,
    )
    attachment_timeout_seconds: float = env_field(
        20.0,
        "ATTACHMENT_TIMEOUT_SECONDS",
        description="Ceiling for extracting text from one attachment",
        gt=0,
    )
    max_history_turns: int = env_field(
        100,
        "MAX_HISTORY_TURNS",
        description="Maximum prior turns plus the new turn accepted per relay call",
        gt=0,
    )
    max_attachment_bytes: int = env_field(10 * 1024 * 1024, "MAX_ATTACHMENT_BYTES", gt=0)
    max_attachment_chars: int = env_field(
        50_000,
        "MAX_ATTACHMENT_CHARS",
        description="Extracted attachment text beyond this is truncated",
        gt=0,
    )
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
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", "llm_base_url", "llm_api_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/scopechat"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
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
            if tmp_path:
                Path(tmp_path).unlink(missing_ok=True)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
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
