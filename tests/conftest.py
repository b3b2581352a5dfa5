import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything reads settings
os.environ.setdefault("LATCHKEY_SECRET", "test-secret-key-for-testing-only-do-not-use")
os.environ.setdefault("LATCHKEY_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from latchkey.config import Settings  # noqa: E402
from latchkey.service.cookies import MemoryCookies  # noqa: E402
from latchkey.service.runtime import reset_runtime_for_tests  # noqa: E402
from latchkey.service.session import SessionManager  # noqa: E402
from latchkey.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class RecordingMailer:
    """Mailer that keeps every message instead of sending it."""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.sent = []
        self.fail_with = fail_with

    async def send_email(self, message) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(message)

    @property
    def last(self):
        return self.sent[-1]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(secret=TEST_SECRET, environment="test")


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cookies():
    return MemoryCookies()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def session_manager(memory_store, settings):
    return SessionManager(memory_store, settings)


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
