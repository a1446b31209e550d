import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Attempt tracking falls back to the in-process store when no Redis URL is set
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from warden.config import Settings  # noqa: E402
from warden.service.accounts import AccountLifecycleManager  # noqa: E402
from warden.service.attempts import AttemptTracker  # noqa: E402
from warden.service.auth import SessionAuthenticator, SessionContext  # noqa: E402
from warden.service.credentials import Argon2SecretHasher, CredentialVerifier  # noqa: E402
from warden.storage.memory import MemoryAttemptStore, MemoryStore  # noqa: E402
from warden.storage.models import UserStatus  # noqa: E402

PASSWORD = "CorrectHorse-42!"


class FakeClock:
    """Manually advanced UTC clock for suspension expiry tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


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


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url="",
        attempt_limit=3,
        suspension_minutes=15,
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def attempt_store():
    return MemoryAttemptStore()


@pytest.fixture
def hasher():
    return Argon2SecretHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def verifier(hasher):
    return CredentialVerifier(hasher)


@pytest.fixture
def tracker(attempt_store, settings, clock):
    return AttemptTracker(attempt_store, settings, clock=clock)


@pytest.fixture
def authenticator(memory_store, tracker, verifier, settings):
    return SessionAuthenticator(
        users=memory_store,
        sessions=memory_store,
        tracker=tracker,
        verifier=verifier,
        settings=settings,
    )


@pytest.fixture
def accounts(memory_store, authenticator, hasher, settings):
    return AccountLifecycleManager(
        users=memory_store,
        authenticator=authenticator,
        hasher=hasher,
        settings=settings,
    )


@pytest.fixture
def make_user(memory_store, hasher):
    """Factory creating users with a hashed password."""

    def _make(
        email="alice",
        password=PASSWORD,
        *,
        activated=True,
        status=UserStatus.ENABLED,
        username=None,
    ):
        return memory_store.create_user(
            email,
            username,
            password_hash=hasher.hash(password) if password else None,
            activated=activated,
            status=status,
        )

    return _make


@pytest.fixture
def make_ctx():
    def _make(origin="1.2.3.4"):
        return SessionContext(origin=origin)

    return _make
