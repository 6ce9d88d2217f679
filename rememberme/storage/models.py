from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

# Bytes of randomness behind each serial and token
SECRET_BYTES = 48


def generate_secret(nbytes: int = SECRET_BYTES) -> str:
    """Return a cookie-safe random string (url-safe base64, never contains '.')."""
    return secrets.token_urlsafe(nbytes)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Login:
    """One persistent login: a serial lineage for one device or browser.

    ``token`` is the single-use credential for the next cookie authentication
    on this serial. Instances are never mutated; every update produces a new
    value through :meth:`rotate` or :func:`dataclasses.replace`.
    """

    username: str
    serial: str
    token: str
    sid: Optional[str]
    created_at: datetime
    last_login: datetime
    last_ip: Optional[str] = None
    last_useragent: str = ""

    @classmethod
    def new(
        cls,
        username: str,
        sid: Optional[str],
        *,
        ip: Optional[str] = None,
        useragent: str = "",
        now: Optional[datetime] = None,
    ) -> "Login":
        now = now or utcnow()
        return cls(
            username=username,
            serial=generate_secret(),
            token=generate_secret(),
            sid=sid,
            created_at=now,
            last_login=now,
            last_ip=ip,
            last_useragent=useragent,
        )

    def rotate(
        self,
        sid: Optional[str],
        *,
        ip: Optional[str] = None,
        useragent: str = "",
        now: Optional[datetime] = None,
    ) -> "Login":
        """Return the successor login after a successful cookie authentication.

        ``username``, ``serial`` and ``created_at`` are preserved; ``last_login``
        never moves backwards.
        """
        now = now or utcnow()
        return replace(
            self,
            token=generate_secret(),
            sid=sid,
            last_login=max(now, self.last_login),
            last_ip=ip,
            last_useragent=useragent,
        )

    def is_older_than(self, cutoff: datetime) -> bool:
        return self.last_login < cutoff


@dataclass(frozen=True)
class NotLoadedUser:
    """Placeholder principal carrying only a username until the app loads the user."""

    username: str


__all__ = ["Login", "NotLoadedUser", "generate_secret", "utcnow", "SECRET_BYTES"]
