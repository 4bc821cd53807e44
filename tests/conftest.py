import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="guardmon_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from guardmon.config import Settings  # noqa: E402
from guardmon.service.accounts import AccountService  # noqa: E402
from guardmon.service.audit import AuditLogger  # noqa: E402
from guardmon.service.auth import AuthService  # noqa: E402
from guardmon.service.lockout import LockoutPolicy  # noqa: E402
from guardmon.service.passwords import PasswordHasher  # noqa: E402
from guardmon.service.runtime import reset_runtime_for_tests  # noqa: E402
from guardmon.service.tokens import TokenService  # noqa: E402
from guardmon.storage.cache import MemoryCache  # noqa: E402
from guardmon.storage.memory import MemoryStore  # noqa: E402
from guardmon.storage.models import AccountStatus, Role  # noqa: E402

ADMIN_PASSWORD = "AdminPass123"
USER_PASSWORD = "CorrectHorse9"


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FailingCache:
    """Token cache whose every operation raises, like an unreachable Redis."""

    def __init__(self, exc: Exception | None = None):
        self.exc = exc or ConnectionError("cache unavailable")
        self.calls = 0

    async def put(self, key, value, ttl_seconds):
        self.calls += 1
        raise self.exc

    async def get(self, key):
        self.calls += 1
        raise self.exc

    async def remove(self, key):
        self.calls += 1
        raise self.exc


class CountingHasher(PasswordHasher):
    """PasswordHasher that records how often ``verify`` runs."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.verify_calls = 0

    def verify(self, password, digest):
        self.verify_calls += 1
        return super().verify(password, digest)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock)


@pytest.fixture
def failing_cache():
    return FailingCache()


@pytest.fixture
def hasher():
    return CountingHasher()


@pytest.fixture
def lockout(store, settings):
    return LockoutPolicy(
        store,
        max_attempts=settings.max_login_attempts,
        lockout_duration=timedelta(minutes=settings.lockout_duration_minutes),
    )


@pytest.fixture
def tokens(cache, clock, settings):
    return TokenService(
        cache,
        session_ttl=timedelta(minutes=settings.session_timeout_minutes),
        csrf_ttl=timedelta(minutes=settings.csrf_token_ttl_minutes),
        clock=clock,
    )


@pytest.fixture
def auth_service(store, tokens, hasher, lockout, settings, clock):
    return AuthService(store, tokens, hasher, lockout, settings, clock=clock)


@pytest.fixture
def audit(store, clock):
    return AuditLogger(store, clock=clock)


@pytest.fixture
def account_service(store, hasher, audit, settings, clock):
    return AccountService(store, hasher, audit, settings, clock=clock)


@pytest.fixture
def admin(store, hasher):
    digest = hasher.hash(ADMIN_PASSWORD)
    return store.create_account(
        "admin", digest, "System Administrator", role=Role.ADMIN, password_history=[digest]
    )


@pytest.fixture
def alice(store, hasher):
    digest = hasher.hash(USER_PASSWORD)
    return store.create_account(
        "Alice",
        digest,
        "Alice Guard",
        role=Role.VIEWER,
        status=AccountStatus.ACTIVE,
        password_history=[digest],
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
