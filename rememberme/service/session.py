from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional, Protocol, Tuple

from rememberme.logging import get_logger
from rememberme.storage.models import generate_secret

logger = get_logger(__name__)

# Bytes of randomness behind a session id
SESSION_ID_BYTES = 32


class SessionStore(Protocol):
    """Server-side store mapping a session id to its data."""

    def get(self, sid: str) -> Optional[Dict[str, Any]]: ...

    def put(self, sid: str, data: Dict[str, Any], ttl: Optional[int] = None) -> None: ...

    def delete(self, sid: str) -> None: ...


def new_session_id() -> str:
    return generate_secret(SESSION_ID_BYTES)


class MemorySessionStore:
    """Lock-guarded in-process session store with optional per-entry TTL."""

    def __init__(self) -> None:
        self._data_lock = threading.RLock()
        self._sessions: Dict[str, Tuple[Dict[str, Any], Optional[float]]] = {}

    def get(self, sid: str) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            entry = self._sessions.get(sid)
            if entry is None:
                return None
            data, expires_at = entry
            if expires_at is not None and expires_at <= time.monotonic():
                del self._sessions[sid]
                return None
            return dict(data)

    def put(self, sid: str, data: Dict[str, Any], ttl: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        with self._data_lock:
            self._sessions[sid] = (dict(data), expires_at)

    def delete(self, sid: str) -> None:
        with self._data_lock:
            self._sessions.pop(sid, None)

    def __contains__(self, sid: object) -> bool:
        return isinstance(sid, str) and self.get(sid) is not None

    def __len__(self) -> int:
        with self._data_lock:
            return len(self._sessions)

    def close(self) -> None:
        with self._data_lock:
            self._sessions.clear()


class Session:
    """The ephemeral session of one request.

    Reads and writes go to a local copy of the data; nothing reaches the
    store until :meth:`save`. ``sid`` is ``None`` until the session is first
    saved or renewed.
    """

    def __init__(
        self,
        store: SessionStore,
        sid: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        *,
        ttl: Optional[int] = None,
    ) -> None:
        self.store = store
        self.sid = sid
        self.data: Dict[str, Any] = dict(data or {})
        self.ttl = ttl
        self.dirty = False
        self.dropped = False

    @classmethod
    def load(
        cls, store: SessionStore, sid: Optional[str], *, ttl: Optional[int] = None
    ) -> "Session":
        """Load the session named by the request's session cookie.

        An unknown or expired id yields a fresh, empty session so a client can
        never pick its own session id.
        """
        data = store.get(sid) if sid else None
        if data is None:
            return cls(store, None, ttl=ttl)
        return cls(store, sid, data, ttl=ttl)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def put(self, key: str, value: Any) -> None:
        self.data[key] = value
        self.dirty = True

    def pop(self, key: str, default: Any = None) -> Any:
        if key in self.data:
            self.dirty = True
        return self.data.pop(key, default)

    def ensure_id(self) -> str:
        if self.sid is None:
            self.sid = new_session_id()
            self.dirty = True
        return self.sid

    def renew(self, sid: Optional[str] = None) -> Optional[str]:
        """Move the session data to a fresh id and delete the old entry.

        Returns the previous id, if any.
        """
        previous = self.sid
        self.sid = sid or new_session_id()
        self.dirty = True
        self.dropped = False
        if previous and previous != self.sid:
            self.store.delete(previous)
        return previous

    def save(self) -> Optional[str]:
        if self.dropped:
            return None
        self.ensure_id()
        self.store.put(self.sid, self.data, self.ttl)
        self.dirty = False
        return self.sid

    def drop(self) -> None:
        if self.sid:
            self.store.delete(self.sid)
            logger.debug("session_dropped")
        self.sid = None
        self.data.clear()
        self.dirty = False
        self.dropped = True


__all__ = [
    "SessionStore",
    "MemorySessionStore",
    "Session",
    "new_session_id",
    "SESSION_ID_BYTES",
]
