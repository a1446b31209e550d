from __future__ import annotations

import os
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.logging import get_logger

logger = get_logger(__name__)


class IdentifierField(str, Enum):
    """User columns that may act as the login identifier."""

    EMAIL = "email"
    USERNAME = "username"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/warden", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks.",
    )
    username_field: IdentifierField = env_field(
        IdentifierField.EMAIL,
        "AUTH_USERNAME_FIELD",
        description="User column used as the login identifier",
    )
    suspend_enabled: bool = env_field(
        True,
        "AUTH_SUSPEND_ENABLED",
        description="Track failed logins and suspend (identifier, origin) pairs",
    )
    attempt_limit: int = env_field(
        5,
        "AUTH_ATTEMPT_LIMIT",
        description="Failed attempts allowed before a suspension is applied",
    )
    suspension_minutes: int = env_field(
        15,
        "AUTH_SUSPENSION_MINUTES",
        description="Length of a suspension in minutes",
    )
    session_provider_key: str = env_field(
        "warden_provider",
        "AUTH_SESSION_PROVIDER_KEY",
        description="Session data key recording which mechanism created the session",
    )
    session_ttl_minutes: int = env_field(60 * 24, "AUTH_SESSION_TTL_MINUTES")
    remember_ttl_days: int = env_field(30, "AUTH_REMEMBER_TTL_DAYS")
    reset_token_length: int = env_field(24, "AUTH_RESET_TOKEN_LENGTH")
    # argon2id cost parameters; tests lower them to keep hashing fast
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")

    model_config = ConfigDict(extra="ignore")

    @property
    def suspension_duration(self) -> timedelta:
        return timedelta(minutes=self.suspension_minutes)

    @classmethod
    def env_names(cls) -> dict[str, str]:
        """Map field name to the environment variable that sets it."""
        names = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
            names[name] = extra.get("env") or name.upper()
        return names

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Environment variables win over values from ``env_file``."""
        sources = {**dotenv_values(env_file), **os.environ}
        return cls(
            **{
                name: sources[env_name]
                for name, env_name in cls.env_names().items()
                if sources.get(env_name) is not None
            }
        )

    @field_validator("username_field")
    @classmethod
    def _validate_username_field(cls, value: IdentifierField) -> IdentifierField:
        return IdentifierField(value)

    @field_validator("attempt_limit", "suspension_minutes", "reset_token_length")
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("session_provider_key")
    @classmethod
    def _ensure_provider_key(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("session_provider_key cannot be blank")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            username_field=_settings_cache.username_field.value,
            suspend_enabled=_settings_cache.suspend_enabled,
            attempt_limit=_settings_cache.attempt_limit,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
