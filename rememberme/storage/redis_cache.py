from __future__ import annotations

import json
from typing import Any, Dict, Optional

from redis import Redis

from rememberme.logging import get_logger
from rememberme.storage.models import NotLoadedUser

logger = get_logger(__name__)

_NOT_LOADED_USER_TAG = "__not_loaded_user__"


def _encode_value(value: Any) -> Any:
    if isinstance(value, NotLoadedUser):
        return {_NOT_LOADED_USER_TAG: value.username}
    raise TypeError(f"session value of type {type(value).__name__} is not JSON serializable")


def _decode_object(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1 and _NOT_LOADED_USER_TAG in obj:
        return NotLoadedUser(obj[_NOT_LOADED_USER_TAG])
    return obj


def dump_session(data: Dict[str, Any]) -> str:
    return json.dumps(data, default=_encode_value, separators=(",", ":"))


def load_session(raw: str) -> Dict[str, Any]:
    return json.loads(raw, object_hook=_decode_object)


class RedisSessionStore:
    """Session store keeping JSON session payloads in Redis.

    Each session lives under ``rememberme:session:<sid>`` and expires with the
    TTL passed to :meth:`put`. The synchronous client is used because the
    authenticator runs on the request's thread and blocks on every store call.
    """

    KEY_PREFIX = "rememberme:session:"

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, sid: str) -> str:
        return f"{self.KEY_PREFIX}{sid}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def get(self, sid: str) -> Optional[Dict[str, Any]]:
        raw = self.client.get(self._key(sid))
        if raw is None:
            return None
        try:
            return load_session(raw)
        except ValueError:
            logger.warning("redis_session_corrupt", key=self._key(sid))
            self.client.delete(self._key(sid))
            return None

    def put(self, sid: str, data: Dict[str, Any], ttl: Optional[int] = None) -> None:
        self.client.set(self._key(sid), dump_session(data), ex=ttl or None)

    def delete(self, sid: str) -> None:
        self.client.delete(self._key(sid))

    def close(self) -> None:
        self.client.close()


__all__ = ["RedisSessionStore", "dump_session", "load_session"]
