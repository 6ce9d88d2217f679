from __future__ import annotations

from typing import Optional


class RememberMeError(Exception):
    """Base class for configuration and programming errors.

    Expected authentication outcomes (missing, malformed or replayed cookies)
    are never raised; they are reported through ``AuthResult``. Everything
    deriving from this class signals a deployment or integration mistake.
    """

    reason: str = "error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        reason: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        if reason is not None:
            self.reason = reason
        self.message = message or self.default_message()
        super().__init__(self.message)
        self.detail = detail or {}

    def default_message(self) -> str:
        return self.__class__.__doc__ or self.reason


_CONFIGURATION_MESSAGES = {
    "no_store": (
        "Login store not configured. Set LOGIN_STORE to 'memory' or 'postgres'."
    ),
    "unknown_store": (
        "Unknown login store. LOGIN_STORE must be 'memory' or 'postgres'."
    ),
    "no_process_name": (
        "No handle configured for the in-memory login store. "
        "Set MEMORY_STORE_NAME."
    ),
    "no_table": (
        "No table configured for the postgres login store. Set LOGIN_TABLE."
    ),
    "no_session_store": (
        "Session store not configured. Set SESSION_STORE to 'memory' or 'redis'."
    ),
    "no_auth_cookie": "Auth cookie name not set. Set AUTH_COOKIE.",
    "no_session_cookie": "Session cookie name not set. Set SESSION_COOKIE.",
    "bad_cleaner_period": "CLEANER_PERIOD must be a positive number of seconds.",
    "bad_cookie_max_age": "COOKIE_MAX_AGE must be a positive number of seconds.",
}


class ConfigurationError(RememberMeError):
    """The configuration is invalid or incomplete."""

    reason = "invalid_configuration"

    def default_message(self) -> str:
        return _CONFIGURATION_MESSAGES.get(self.reason, super().default_message())


class NotInstalledError(RememberMeError):
    """The authenticator has not been installed on this request.

    Call ``Authenticator.install(ctx)`` (or add ``PersistentLoginMiddleware``)
    before using the protocol operations.
    """

    reason = "not_installed"


class SessionError(RememberMeError):
    """The request has no session to bind the login to."""

    reason = "no_session"


class CurrentUserError(RememberMeError):
    """There is no currently logged-in user in the session."""

    reason = "no_current_user"

    def __init__(self, key: str = "current_user") -> None:
        super().__init__(
            f"There is no currently logged-in user. "
            f"Ensure the session contains a {key!r} entry before registering a login.",
            detail={"current_user_key": key},
        )


class InvalidUserError(RememberMeError):
    """The current user does not carry the configured username field."""

    reason = "invalid_user"

    def __init__(self, key: str = "current_user", field: str = "username") -> None:
        super().__init__(
            f"The {key!r} session entry does not contain a {field!r} field.",
            detail={"current_user_key": key, "username_field": field},
        )


__all__ = [
    "RememberMeError",
    "ConfigurationError",
    "NotInstalledError",
    "SessionError",
    "CurrentUserError",
    "InvalidUserError",
]
