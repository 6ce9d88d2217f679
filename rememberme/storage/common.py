"""Contract shared by the login store backends.

Both backends key logins by ``(username, serial)`` and must make ``put`` and
``compare_and_put`` atomic: an observer never sees a partially written login,
and a token presented by two concurrent requests can be rotated only once.
"""

from __future__ import annotations

import hmac
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, List, Optional, Protocol

from rememberme.storage.models import Login, utcnow


class CompareResult(str, Enum):
    """What ``compare_and_put`` found under the login's key."""

    WRITTEN = "written"
    MISMATCH = "mismatch"
    MISSING = "missing"


class LoginStore(Protocol):
    def list_user_logins(self, username: str) -> List[Login]: ...

    def get(self, username: str, serial: str) -> Optional[Login]: ...

    def put(self, login: Login) -> None: ...

    def compare_and_put(self, login: Login, expected_token: str) -> CompareResult: ...

    def delete(self, username: str, serial: str) -> None: ...

    def clean_old_logins(self, max_age: int) -> Iterable[Login]: ...

    def close(self) -> None: ...


def expiry_cutoff(max_age: int | float, now: Optional[datetime] = None) -> datetime:
    """Logins whose ``last_login`` is strictly before this instant are expired."""
    return (now or utcnow()) - timedelta(seconds=max_age)


def tokens_match(stored: str, presented: str) -> bool:
    """Constant-time token comparison."""
    return hmac.compare_digest(stored.encode("utf-8"), presented.encode("utf-8"))


__all__ = ["CompareResult", "LoginStore", "expiry_cutoff", "tokens_match"]
