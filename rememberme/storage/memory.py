from __future__ import annotations

import itertools
import queue
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from rememberme.logging import get_logger
from rememberme.service.errors import ConfigurationError
from rememberme.storage.common import CompareResult, expiry_cutoff, tokens_match
from rememberme.storage.errors import StoreClosedError, StoreTimeoutError
from rememberme.storage.models import Login

DEFAULT_TIMEOUT_SECONDS = 5.0

_STOP = object()


class MemoryLoginStore:
    """In-process login store owned by a single worker thread.

    The ``username -> serial -> Login`` index is only ever touched by the
    worker. Public methods post a request to the worker's mailbox and block on
    the reply, so requests are applied one at a time in arrival order: once
    ``put`` has returned, any later ``get`` from any thread observes it.

    Nothing is persisted; the store is meant for tests and single-process
    deployments.
    """

    def __init__(
        self,
        name: str = "rememberme",
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        initial: Optional[Iterable[Login]] = None,
    ) -> None:
        if not name:
            raise ConfigurationError(reason="no_process_name")
        self.name = name
        self.timeout = timeout
        self.logger = get_logger(__name__)
        self._logins: Dict[str, Dict[str, Login]] = {}
        for login in initial or ():
            self._do_put(login)
        self._mailbox: "queue.Queue[Any]" = queue.Queue()
        self._closed = False
        self._close_lock = threading.Lock()
        self._worker = threading.Thread(
            target=self._serve, name=f"login-store:{name}", daemon=True
        )
        self._worker.start()

    # request/reply plumbing
    @property
    def closed(self) -> bool:
        return self._closed

    def _call(self, handler: Callable[..., Any], *args: Any) -> Any:
        future: Future = Future()
        # Posting under the lock keeps every request ahead of the stop marker
        with self._close_lock:
            if self._closed:
                raise StoreClosedError(
                    f"memory login store {self.name!r} is stopped", {"store": self.name}
                )
            self._mailbox.put((future, handler, args))
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError as exc:
            # Not yet picked up by the worker: make sure it never applies
            future.cancel()
            self.logger.error(
                "memory_store_timeout",
                store=self.name,
                operation=handler.__name__,
                timeout=self.timeout,
            )
            raise StoreTimeoutError(
                f"memory login store {self.name!r} did not answer within {self.timeout}s",
                {"store": self.name, "operation": handler.__name__},
            ) from exc

    def _serve(self) -> None:
        while True:
            item = self._mailbox.get()
            if item is _STOP:
                break
            future, handler, args = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = handler(*args)
            except Exception as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)
        self._reject_pending()

    def _reject_pending(self) -> None:
        while True:
            try:
                item = self._mailbox.get_nowait()
            except queue.Empty:
                return
            if item is _STOP:
                continue
            future = item[0]
            if future.set_running_or_notify_cancel():
                future.set_exception(
                    StoreClosedError(
                        f"memory login store {self.name!r} is stopped",
                        {"store": self.name},
                    )
                )

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            self._mailbox.put(_STOP)
        self._worker.join(timeout=self.timeout)
        self.logger.debug("memory_store_stopped", store=self.name)

    # public API
    def list_user_logins(self, username: str) -> List[Login]:
        return self._call(self._do_list, username)

    def get(self, username: str, serial: str) -> Optional[Login]:
        return self._call(self._do_get, username, serial)

    def put(self, login: Login) -> None:
        self._call(self._do_put, login)

    def compare_and_put(self, login: Login, expected_token: str) -> CompareResult:
        return self._call(self._do_compare_and_put, login, expected_token)

    def delete(self, username: str, serial: str) -> None:
        self._call(self._do_delete, username, serial)

    def clean_old_logins(self, max_age: int) -> Iterator[Login]:
        """Remove and return every login whose ``last_login`` is older than ``max_age`` seconds.

        The result is a one-shot iterator over the removed logins.
        """
        return self._call(self._do_clean_old_logins, max_age)

    def clear(self) -> None:
        self._call(self._do_clear)

    # handlers; only ever run on the worker thread
    def _do_list(self, username: str) -> List[Login]:
        return list(self._logins.get(username, {}).values())

    def _do_get(self, username: str, serial: str) -> Optional[Login]:
        return self._logins.get(username, {}).get(serial)

    def _do_put(self, login: Login) -> None:
        self._logins.setdefault(login.username, {})[login.serial] = login

    def _do_compare_and_put(self, login: Login, expected_token: str) -> CompareResult:
        current = self._do_get(login.username, login.serial)
        if current is None:
            return CompareResult.MISSING
        if not tokens_match(current.token, expected_token):
            return CompareResult.MISMATCH
        self._do_put(login)
        return CompareResult.WRITTEN

    def _do_delete(self, username: str, serial: str) -> None:
        user_logins = self._logins.get(username)
        if not user_logins:
            return
        user_logins.pop(serial, None)
        if not user_logins:
            del self._logins[username]

    def _do_clean_old_logins(self, max_age: int) -> Iterator[Login]:
        cutoff = expiry_cutoff(max_age)
        expired_groups: List[List[Login]] = []
        for username in list(self._logins):
            kept: Dict[str, Login] = {}
            expired: List[Login] = []
            for serial, login in self._logins[username].items():
                if login.is_older_than(cutoff):
                    expired.append(login)
                else:
                    kept[serial] = login
            if expired:
                expired_groups.append(expired)
            if kept:
                self._logins[username] = kept
            else:
                del self._logins[username]
        return itertools.chain.from_iterable(expired_groups)

    def _do_clear(self) -> None:
        self._logins.clear()


_registry: Dict[str, MemoryLoginStore] = {}
_registry_lock = threading.Lock()


def get_memory_store(
    name: str, *, timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> MemoryLoginStore:
    """Return the running store registered under ``name``, starting it if needed."""
    if not name:
        raise ConfigurationError(reason="no_process_name")
    with _registry_lock:
        store = _registry.get(name)
        if store is None or store.closed:
            store = MemoryLoginStore(name, timeout=timeout)
            _registry[name] = store
        return store


def stop_memory_stores() -> None:
    """Stop every registered store (used when tearing down tests)."""
    with _registry_lock:
        stores = list(_registry.values())
        _registry.clear()
    for store in stores:
        store.close()


__all__ = ["MemoryLoginStore", "get_memory_store", "stop_memory_stores"]
