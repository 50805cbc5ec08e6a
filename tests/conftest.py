import asyncio
import inspect
import os
import sys
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any authcore import reads it
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_SIGNING_KEY", "test-signing-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("VERIFY_MIN_DELAY_SECONDS", "0")
os.environ.setdefault("VERIFY_DELAY_JITTER_SECONDS", "0")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import Settings  # noqa: E402
from authcore.service.hashing import Argon2Hasher  # noqa: E402
from authcore.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402
from authcore.storage.models import Credential, Identity  # noqa: E402

TEST_SIGNING_KEY = "test-signing-key-for-testing-only-do-not-use-in-production"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ManualHandle:
    def __init__(self, due: datetime, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose timers fire only when ``run_due`` is called."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.handles: list[ManualHandle] = []

    def call_later(self, delay, callback):
        handle = ManualHandle(self.clock() + timedelta(seconds=delay), callback)
        self.handles.append(handle)
        return handle

    def pending(self) -> list[ManualHandle]:
        return [h for h in self.handles if not h.cancelled]

    def run_due(self) -> int:
        fired = 0
        for handle in list(self.handles):
            if handle.cancelled or handle.due > self.clock():
                continue
            handle.cancelled = True
            handle.callback()
            fired += 1
        return fired


class RecordingChannel:
    def __init__(self):
        self.codes: list[tuple[str, str]] = []
        self.tokens: list[tuple[str, str]] = []

    def send_two_factor_code(self, identity, code):
        self.codes.append((identity.email, code))
        return True

    def send_recovery_token(self, identity, token):
        self.tokens.append((identity.email, token))
        return True

    @property
    def last_code(self) -> str:
        return self.codes[-1][1]

    @property
    def last_token(self) -> str:
        return self.tokens[-1][1]


class RecordingAudit:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def emit(self, event, **fields):
        self.events.append((event, fields))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def count(self, name: str) -> int:
        return self.names().count(name)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def hasher():
    return Argon2Hasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        state_dir=str(tmp_path),
        test_mode=True,
        session_signing_key=TEST_SIGNING_KEY,
        verify_min_delay_seconds=0,
        verify_delay_jitter_seconds=0,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
    )


@pytest.fixture
def runtime(settings, memory_store, hasher, channel, audit, scheduler, clock):
    return Runtime(
        settings,
        store=memory_store,
        hasher=hasher,
        channel=channel,
        audit=audit,
        scheduler=scheduler,
        clock=clock,
    )


@pytest.fixture
def facade(runtime):
    return runtime.new_context()


@pytest.fixture
def create_identity(memory_store, hasher):
    """Factory that stores an identity with a hashed password."""

    def _create(
        username: str = "alice",
        password: str = "Correct1pass",
        *,
        role: str = "viewer",
        email: str | None = None,
        enabled: bool = True,
        store=None,
    ) -> Identity:
        target = store or memory_store
        identity = Identity(
            id=str(uuid.uuid4()),
            username=username,
            display_name=username.title(),
            email=email or f"{username.lower()}@example.com",
            role=role,
            enabled=enabled,
        )
        salt = hasher.generate_salt()
        credential = Credential(
            identity_id=identity.id,
            password_hash=hasher.hash(password, salt),
            password_salt=salt,
        )
        return target.create_identity(identity, credential)

    return _create


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
