import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from deviceauth.config import Settings  # noqa: E402
from deviceauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from deviceauth.service.sessions import SessionManager  # noqa: E402
from deviceauth.service.tokens import TokenIssuer  # noqa: E402
from deviceauth.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Manually advanced wall clock for token and session timing."""

    def __init__(self, start: float = 1_800_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_days=730,
        use_memory_store=True,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(settings, clock):
    tokens = TokenIssuer.from_settings(settings)
    tokens.clock = clock
    return tokens


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def manager(memory_store, issuer):
    return SessionManager(memory_store, issuer)


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
