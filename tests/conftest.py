import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("LOGIN_STORE", "memory")
os.environ.setdefault("MEMORY_STORE_NAME", "rememberme-test")
os.environ.setdefault("SESSION_STORE", "memory")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("CLEANER_ENABLED", "false")
os.environ.setdefault("STORE_TIMEOUT_SECONDS", "2")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from rememberme.service.authenticator import (  # noqa: E402
    Authenticator,
    AuthenticatorOptions,
)
from rememberme.service.runtime import reset_runtime_for_tests  # noqa: E402
from rememberme.service.session import MemorySessionStore  # noqa: E402
from rememberme.storage.memory import MemoryLoginStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def login_store():
    store = MemoryLoginStore("test-logins", timeout=2.0)
    yield store
    store.close()


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def authenticator(login_store, session_store):
    return Authenticator(login_store, session_store, AuthenticatorOptions())


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
