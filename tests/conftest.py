import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set before any gatehouse import reads the environment
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("TOKEN_SYMMETRIC_KEY", "test-symmetric-key-0123456789abcdef")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gatehouse.config import Settings  # noqa: E402
from gatehouse.service.auth import AuthSessionManager  # noqa: E402
from gatehouse.service.tokens import TokenCodec  # noqa: E402
from gatehouse.storage.memory import MemoryCache, MemoryStore  # noqa: E402
from gatehouse.storage.models import Event, User  # noqa: E402

TEST_KEY = "test-symmetric-key-0123456789abcdef"


class FakeClock:
    """Settable clock shared by the codec, stores and services under test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingMailer:
    is_configured = True

    def __init__(self, succeed: bool = True):
        self.sent: list[tuple[str, str, int]] = []
        self.succeed = succeed

    def send_password_reset_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        self.sent.append((to_email, code, ttl_minutes))
        return self.succeed


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    return TokenCodec(TEST_KEY, clock=clock)


@pytest.fixture
def store(clock):
    store = MemoryStore(clock=clock)
    store.add_user(User(id=1, email="ada@example.com", password_hash="old"))
    store.add_user(User(id=2, email="grace@example.com", is_admin=True))
    store.add_event(Event(id=10, owner_id=1))
    return store


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def auth(codec, store, clock):
    return AuthSessionManager(
        codec,
        store,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        clock=clock,
    )


@pytest.fixture
def settings():
    return Settings(
        token_symmetric_key=TEST_KEY,
        test_mode=True,
        use_memory_store=True,
        rate_limits={"generate-desc": {"limit": 2, "window_seconds": 60}},
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
