import asyncio
import inspect
import os
from datetime import datetime, timedelta, timezone

# Configure the environment before any import that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
# TestClient talks plain HTTP, so the cookie jar drops Secure cookies
os.environ.setdefault("ALLOW_INSECURE_COOKIES", "true")
os.environ.setdefault("APPROVER_EMAIL", "approver@example.com")
# Rate limits stay in-process during tests
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

from pilotlog.config import Settings  # noqa: E402
from pilotlog.service.auth import AuthService  # noqa: E402
from pilotlog.service.notifications import TokenNotifier  # noqa: E402
from pilotlog.service.rate_limit import MemoryRateLimitBackend  # noqa: E402
from pilotlog.service.runtime import reset_runtime_for_tests  # noqa: E402
from pilotlog.service.sessions import SessionManager  # noqa: E402
from pilotlog.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable clock injected into services that need to observe time passing."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        approver_email="approver@example.com",
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def session_manager(memory_store, clock):
    return SessionManager(memory_store, ttl_minutes=30 * 24 * 60, clock=clock)


@pytest.fixture
def auth_service(memory_store, settings, session_manager, clock):
    return AuthService(
        memory_store,
        settings,
        sessions=session_manager,
        rate_limit_backend=MemoryRateLimitBackend(),
        notifier=TokenNotifier("https://logbook.example.com", capture=True),
        clock=clock,
    )


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
