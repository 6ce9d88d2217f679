from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from rememberme.service.session import Session


@dataclass(frozen=True)
class CookieOp:
    """A pending response cookie. ``value is None`` means delete."""

    name: str
    value: Optional[str]
    max_age: Optional[int] = None

    @property
    def is_delete(self) -> bool:
        return self.value is None


class RequestContext:
    """Framework-neutral view of one request and its pending response cookies.

    ``assigns`` is what the application reads after authentication
    (``authenticated``, ``current_user``); ``private`` carries flags owned by
    the authenticator, such as ``unexpected_token``.
    """

    def __init__(
        self,
        cookies: Optional[Mapping[str, str]] = None,
        *,
        remote_ip: Optional[str] = None,
        user_agent: str = "",
        session: Optional[Session] = None,
    ) -> None:
        self.cookies: Dict[str, str] = dict(cookies or {})
        self.remote_ip = remote_ip
        self.user_agent = user_agent or ""
        self.session = session
        self.assigns: Dict[str, Any] = {}
        self.private: Dict[str, Any] = {}
        self.response_cookies: Dict[str, CookieOp] = {}

    def cookie(self, name: str) -> Optional[str]:
        """Current value of a cookie, taking pending response cookies into account."""
        op = self.response_cookies.get(name)
        if op is not None:
            return op.value
        return self.cookies.get(name)

    def set_cookie(self, name: str, value: str, *, max_age: Optional[int] = None) -> None:
        self.response_cookies[name] = CookieOp(name, value, max_age)

    def delete_cookie(self, name: str) -> None:
        self.response_cookies[name] = CookieOp(name, None)


__all__ = ["CookieOp", "RequestContext"]
