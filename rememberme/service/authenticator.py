from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, List, Optional

from rememberme.logging import get_logger
from rememberme.service.cookie import decode_auth_cookie, encode_auth_cookie
from rememberme.service.errors import (
    ConfigurationError,
    CurrentUserError,
    InvalidUserError,
    NotInstalledError,
    SessionError,
)
from rememberme.service.request import RequestContext
from rememberme.service.session import Session, SessionStore, new_session_id
from rememberme.storage.common import (
    CompareResult,
    LoginStore,
    expiry_cutoff,
    tokens_match,
)
from rememberme.storage.models import Login, NotLoadedUser

if TYPE_CHECKING:
    from rememberme.config import Settings

logger = get_logger(__name__)

DEFAULT_COOKIE_MAX_AGE = 7_776_000  # 90 days

INSTALL_KEY = "rememberme"
UNEXPECTED_TOKEN_KEY = "unexpected_token"


class AuthOutcome(str, Enum):
    """How a request was (or was not) authenticated."""

    SESSION = "session"
    ROTATED = "rotated"
    NO_COOKIE = "no_cookie"
    INVALID_COOKIE = "invalid_cookie"
    NO_LOGIN = "no_login"
    COMPROMISED = "compromised"


@dataclass(frozen=True)
class AuthResult:
    outcome: AuthOutcome
    username: Optional[str] = None
    login: Optional[Login] = None

    @property
    def authenticated(self) -> bool:
        return self.outcome in (AuthOutcome.SESSION, AuthOutcome.ROTATED)

    @property
    def compromised(self) -> bool:
        return self.outcome is AuthOutcome.COMPROMISED


@dataclass(frozen=True)
class AuthenticatorOptions:
    """Cookie names and session keys, resolved once per Authenticator."""

    auth_cookie: str = "remember_me"
    session_cookie: str = "session_id"
    cookie_max_age: int = DEFAULT_COOKIE_MAX_AGE
    current_user_key: str = "current_user"
    username_field: str = "username"
    authenticated_key: str = "authenticated"
    session_ttl_seconds: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.auth_cookie:
            raise ConfigurationError(reason="no_auth_cookie")
        if not self.session_cookie:
            raise ConfigurationError(reason="no_session_cookie")
        if self.cookie_max_age <= 0:
            raise ConfigurationError(reason="bad_cookie_max_age")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "AuthenticatorOptions":
        return cls(
            auth_cookie=settings.auth_cookie,
            session_cookie=settings.session_cookie,
            cookie_max_age=settings.cookie_max_age,
            current_user_key=settings.current_user_key,
            username_field=settings.username_field,
            authenticated_key=settings.authenticated_key,
            session_ttl_seconds=settings.session_ttl_seconds or None,
        )


def _username_of(principal: Any, field: str) -> Optional[str]:
    if isinstance(principal, Mapping):
        value = principal.get(field)
    else:
        value = getattr(principal, field, None)
    if isinstance(value, str) and value:
        return value
    return None


class Authenticator:
    """Registers, validates, rotates and revokes persistent logins.

    Every protocol call works on a :class:`RequestContext` the authenticator
    was installed on and talks to the login store synchronously. Expected
    outcomes (no cookie, malformed cookie, unknown login, replayed token) are
    reported through :class:`AuthResult`; only misconfiguration and store
    failures raise.
    """

    def __init__(
        self,
        store: LoginStore,
        sessions: SessionStore,
        options: Optional[AuthenticatorOptions] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.options = options or AuthenticatorOptions()

    # request lifecycle
    def install(self, ctx: RequestContext) -> RequestContext:
        """Bind this authenticator to ``ctx`` and load its session."""
        if ctx.session is None:
            ctx.session = Session.load(
                self.sessions,
                ctx.cookies.get(self.options.session_cookie),
                ttl=self.options.session_ttl_seconds,
            )
        ctx.private[INSTALL_KEY] = self
        return ctx

    def new_context(
        self,
        cookies: Optional[Mapping[str, str]] = None,
        *,
        remote_ip: Optional[str] = None,
        user_agent: str = "",
    ) -> RequestContext:
        ctx = RequestContext(cookies, remote_ip=remote_ip, user_agent=user_agent)
        return self.install(ctx)

    def commit(self, ctx: RequestContext) -> None:
        """Persist the session and queue the session cookie on the response."""
        session = ctx.session
        if session is None:
            return
        cookie = self.options.session_cookie
        request_sid = ctx.cookies.get(cookie)
        if session.dropped:
            if request_sid:
                ctx.delete_cookie(cookie)
            return
        if session.dirty:
            session.save()
        if session.sid and session.sid != request_sid:
            ctx.set_cookie(cookie, session.sid)

    def _require_installed(self, ctx: RequestContext) -> None:
        if ctx.private.get(INSTALL_KEY) is not self:
            raise NotInstalledError()

    @staticmethod
    def _require_session(ctx: RequestContext) -> Session:
        if ctx.session is None:
            raise SessionError()
        return ctx.session

    def _max_age(self, override: Optional[int]) -> int:
        if override is None:
            return self.options.cookie_max_age
        if override <= 0:
            raise ConfigurationError(reason="bad_cookie_max_age")
        return override

    def _set_auth_cookie(self, ctx: RequestContext, login: Login, max_age: int) -> None:
        ctx.set_cookie(
            self.options.auth_cookie,
            encode_auth_cookie(login.username, login.serial, login.token),
            max_age=max_age,
        )

    # protocol
    def register_login(
        self,
        ctx: RequestContext,
        *,
        current_user_key: Optional[str] = None,
        username_field: Optional[str] = None,
        cookie_max_age: Optional[int] = None,
    ) -> Login:
        """Start a persistent login for the user currently held in the session.

        Call after the application has validated credentials and stored the
        user under ``current_user_key``. Issues the auth cookie.
        """
        self._require_installed(ctx)
        session = self._require_session(ctx)
        key = current_user_key or self.options.current_user_key
        field = username_field or self.options.username_field
        max_age = self._max_age(cookie_max_age)

        principal = session.get(key)
        if principal is None:
            raise CurrentUserError(key)
        username = _username_of(principal, field)
        if username is None:
            raise InvalidUserError(key, field)

        session.ensure_id()
        session.save()
        login = Login.new(
            username, session.sid, ip=ctx.remote_ip, useragent=ctx.user_agent
        )
        self.store.put(login)
        self._set_auth_cookie(ctx, login, max_age)
        logger.info("login_registered", username=username)
        return login

    def authenticate(
        self,
        ctx: RequestContext,
        *,
        authenticated_key: Optional[str] = None,
        current_user_key: Optional[str] = None,
        cookie_max_age: Optional[int] = None,
    ) -> AuthResult:
        self._require_installed(ctx)
        auth_key = authenticated_key or self.options.authenticated_key
        user_key = current_user_key or self.options.current_user_key
        max_age = self._max_age(cookie_max_age)

        session = ctx.session
        if session is not None and session.get(auth_key):
            user = session.get(user_key)
            ctx.assigns[auth_key] = True
            ctx.assigns[user_key] = user
            return AuthResult(
                AuthOutcome.SESSION,
                username=_username_of(user, self.options.username_field),
            )

        cookie_name = self.options.auth_cookie
        raw = ctx.cookies.get(cookie_name)
        if raw is None:
            return AuthResult(AuthOutcome.NO_COOKIE)

        parsed = decode_auth_cookie(raw)
        if parsed is None:
            logger.info("login_cookie_invalid", remote_ip=ctx.remote_ip)
            ctx.delete_cookie(cookie_name)
            return AuthResult(AuthOutcome.INVALID_COOKIE)

        login = self.store.get(parsed.username, parsed.serial)
        if login is None:
            logger.info("login_not_found", username=parsed.username)
            ctx.delete_cookie(cookie_name)
            return AuthResult(AuthOutcome.NO_LOGIN, username=parsed.username)

        if not tokens_match(login.token, parsed.token):
            return self._compromised(ctx, parsed.username, parsed.serial)

        session = self._require_session(ctx)
        new_sid = new_session_id()
        rotated = login.rotate(new_sid, ip=ctx.remote_ip, useragent=ctx.user_agent)
        written = self.store.compare_and_put(rotated, parsed.token)
        if written is CompareResult.MISSING:
            # Deleted between our get and write (logout or expiry)
            logger.info("login_not_found", username=parsed.username)
            ctx.delete_cookie(cookie_name)
            return AuthResult(AuthOutcome.NO_LOGIN, username=parsed.username)
        if written is not CompareResult.WRITTEN:
            # Another request rotated this serial between our get and write
            return self._compromised(ctx, parsed.username, parsed.serial)

        session.renew(new_sid)
        if login.sid and login.sid != new_sid:
            self.sessions.delete(login.sid)
        user = NotLoadedUser(rotated.username)
        session.put(auth_key, True)
        session.put(user_key, user)
        session.save()
        ctx.assigns[auth_key] = True
        ctx.assigns[user_key] = user
        self._set_auth_cookie(ctx, rotated, max_age)
        logger.info("login_rotated", username=rotated.username)

        self.clean_user_logins(rotated.username)
        return AuthResult(AuthOutcome.ROTATED, username=rotated.username, login=rotated)

    def _compromised(self, ctx: RequestContext, username: str, serial: str) -> AuthResult:
        logger.warning(
            "login_token_mismatch",
            username=username,
            serial=serial,
            remote_ip=ctx.remote_ip,
            user_agent=ctx.user_agent,
        )
        self.delete_all_user_logins(username)
        ctx.delete_cookie(self.options.auth_cookie)
        ctx.private[UNEXPECTED_TOKEN_KEY] = True
        return AuthResult(AuthOutcome.COMPROMISED, username=username)

    def logout(self, ctx: RequestContext) -> None:
        """Forget the login named by the auth cookie, if any.

        Always deletes the auth cookie. When the cookie resolves to a stored
        login, that login, its session and the session cookie go too.
        """
        self._require_installed(ctx)
        parsed = decode_auth_cookie(ctx.cookies.get(self.options.auth_cookie))
        login = self.store.get(parsed.username, parsed.serial) if parsed else None
        if login is not None:
            self.delete_login(login.username, login.serial)
            if ctx.session is not None:
                ctx.session.drop()
            ctx.delete_cookie(self.options.session_cookie)
            logger.info("login_logged_out", username=login.username)
        ctx.delete_cookie(self.options.auth_cookie)

    def unexpected_token(self, ctx: RequestContext) -> bool:
        """Whether this request presented a replayed token."""
        self._require_installed(ctx)
        return bool(ctx.private.get(UNEXPECTED_TOKEN_KEY, False))

    # login administration
    def list_user_logins(self, username: str) -> List[Login]:
        return list(self.store.list_user_logins(username))

    def delete_login(self, username: str, serial: str) -> None:
        login = self.store.get(username, serial)
        if login is None:
            return
        self.store.delete(username, serial)
        if login.sid:
            self.sessions.delete(login.sid)

    def delete_all_user_logins(self, username: str) -> int:
        logins = self.list_user_logins(username)
        for login in logins:
            self.store.delete(login.username, login.serial)
            if login.sid:
                self.sessions.delete(login.sid)
        if logins:
            logger.info("user_logins_revoked", username=username, count=len(logins))
        return len(logins)

    def clean_user_logins(self, username: str) -> int:
        """Delete the user's logins unused for longer than the cookie max-age."""
        cutoff = expiry_cutoff(self.options.cookie_max_age)
        removed = 0
        for login in self.list_user_logins(username):
            if not login.is_older_than(cutoff):
                continue
            self.store.delete(login.username, login.serial)
            if login.sid:
                self.sessions.delete(login.sid)
            removed += 1
        return removed

    def clean_old_logins(self, max_age: Optional[int] = None) -> int:
        """Expire logins across all users and delete their sessions."""
        max_age = self.options.cookie_max_age if max_age is None else max_age
        removed = 0
        for login in self.store.clean_old_logins(max_age):
            if login.sid:
                self.sessions.delete(login.sid)
            removed += 1
        if removed:
            logger.info("logins_expired", count=removed, max_age=max_age)
        return removed


__all__ = [
    "AuthOutcome",
    "AuthResult",
    "AuthenticatorOptions",
    "Authenticator",
    "DEFAULT_COOKIE_MAX_AGE",
]
