from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from rememberme.config import (
    LoginBackend,
    SessionBackend,
    Settings,
    get_settings,
    reset_settings_cache,
)
from rememberme.logging import get_logger
from rememberme.service.authenticator import Authenticator, AuthenticatorOptions
from rememberme.service.cleaner import Cleaner
from rememberme.service.errors import ConfigurationError
from rememberme.service.session import MemorySessionStore
from rememberme.storage.common import LoginStore
from rememberme.storage.memory import get_memory_store, stop_memory_stores
from rememberme.storage.postgres import PostgresLoginStore
from rememberme.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (
            parsed.scheme,
            netloc,
            parsed.path,
            parsed.params,
            parsed.query,
            parsed.fragment,
        )
    )


def build_login_store(settings: Settings) -> LoginStore:
    """Instantiate the configured login store backend."""
    backend = settings.login_store
    if not backend:
        raise ConfigurationError(reason="no_store")
    if backend == LoginBackend.MEMORY.value:
        if not settings.memory_store_name:
            raise ConfigurationError(reason="no_process_name")
        return get_memory_store(
            settings.memory_store_name, timeout=settings.store_timeout_seconds
        )
    if backend == LoginBackend.POSTGRES.value:
        if not settings.login_table:
            raise ConfigurationError(reason="no_table")
        return PostgresLoginStore(
            settings.database_url,
            settings.login_table,
            timeout=settings.store_timeout_seconds,
        )
    raise ConfigurationError(reason="unknown_store", detail={"login_store": backend})


def build_session_store(
    settings: Settings,
) -> Union[MemorySessionStore, RedisSessionStore]:
    backend = settings.session_store
    if backend == SessionBackend.MEMORY.value:
        return MemorySessionStore()
    if backend == SessionBackend.REDIS.value:
        store = RedisSessionStore(
            settings.redis_url, socket_timeout=settings.store_timeout_seconds
        )
        store.verify_connection()
        return store
    raise ConfigurationError(
        reason="no_session_store", detail={"session_store": backend}
    )


class Runtime:
    """Holds the stores, the authenticator and the cleaner for one process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            login_store=self.settings.login_store,
            session_store=self.settings.session_store,
        )

        try:
            self.store = build_login_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.settings.login_store,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        try:
            self.sessions = build_session_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_session_store_init_failed",
                store_type=self.settings.session_store,
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.store.close()
            raise

        self.authenticator = Authenticator(
            self.store,
            self.sessions,
            AuthenticatorOptions.from_settings(self.settings),
        )
        self.cleaner = Cleaner(
            self.authenticator,
            period=self.settings.cleaner_period,
            max_age=self.settings.cookie_max_age,
            initial_delay=self.settings.cleaner_initial_delay,
        )
        logger.info("runtime_init_complete")

    def close(self) -> None:
        """Release store connections. The cleaner must already be stopped."""
        self.store.close()
        close_sessions = getattr(self.sessions, "close", None)
        if close_sessions is not None:
            close_sessions()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Tear down the current runtime and build a fresh one from the environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        stop_memory_stores()
        reset_settings_cache()
        runtime = Runtime()
        return runtime


__all__ = [
    "Runtime",
    "build_login_store",
    "build_session_store",
    "get_runtime",
    "reset_runtime_for_tests",
]
