from __future__ import annotations

import os
from enum import Enum
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class LoginBackend(str, Enum):
    """Login store backends."""

    MEMORY = "memory"
    POSTGRES = "postgres"


class SessionBackend(str, Enum):
    """Session store backends."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Deployment settings, read once from the environment and ``.env``."""

    # login store
    login_store: Optional[str] = env_field(LoginBackend.MEMORY.value, "LOGIN_STORE")
    memory_store_name: str = env_field("rememberme", "MEMORY_STORE_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/rememberme", "DATABASE_URL"
    )
    login_table: str = env_field("logins", "LOGIN_TABLE")
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)

    # session store
    session_store: Optional[str] = env_field(
        SessionBackend.MEMORY.value, "SESSION_STORE"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    session_ttl_seconds: int = env_field(
        86_400, "SESSION_TTL_SECONDS", ge=0, description="0 disables expiry"
    )

    # cookies and session keys
    auth_cookie: str = env_field("remember_me", "AUTH_COOKIE")
    session_cookie: str = env_field("session_id", "SESSION_COOKIE")
    cookie_max_age: int = env_field(7_776_000, "COOKIE_MAX_AGE")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    current_user_key: str = env_field("current_user", "CURRENT_USER_KEY")
    username_field: str = env_field("username", "USERNAME_FIELD")
    authenticated_key: str = env_field("authenticated", "AUTHENTICATED_KEY")

    # cleaner
    cleaner_enabled: bool = env_field(True, "CLEANER_ENABLED")
    cleaner_period: float = env_field(86_400, "CLEANER_PERIOD")
    cleaner_initial_delay: Optional[float] = env_field(
        None, "CLEANER_INITIAL_DELAY"
    )

    # logging; applied by rememberme.logging at import
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

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

    @field_validator("login_store", "session_store")
    @classmethod
    def _normalize_backend(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().lower()
        return value or None

    @field_validator("cleaner_initial_delay", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None


__all__ = [
    "LoginBackend",
    "SessionBackend",
    "Settings",
    "env_field",
    "get_settings",
    "reset_settings_cache",
]
