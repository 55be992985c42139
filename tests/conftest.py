import asyncio
import inspect
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_CACHE_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps tests on the in-process cache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from applicant_auth.config import Settings  # noqa: E402
from applicant_auth.service.auth import AuthService  # noqa: E402
from applicant_auth.service.brute_force import BruteForceGuard  # noqa: E402
from applicant_auth.service.revocation import RevocationRegistry  # noqa: E402
from applicant_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from applicant_auth.service.tokens import TokenService  # noqa: E402
from applicant_auth.storage.cache import MemoryCache  # noqa: E402
from applicant_auth.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Controllable clock shared by the cache, token service and flows."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.t = start

    def time(self) -> float:
        return self.t

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.t, tz=timezone.utc)

    def advance(self, seconds: float) -> None:
        self.t += seconds


@dataclass
class RecordingMailer:
    """Mailer double that records every message and can be told to fail."""

    fail: bool = False
    activations: list = field(default_factory=list)
    resets: list = field(default_factory=list)
    otps: list = field(default_factory=list)
    notices: list = field(default_factory=list)

    def _record(self, bucket: list, *args) -> bool:
        if self.fail:
            return False
        bucket.append(args)
        return True

    def send_activation(self, to_email, token):
        return self._record(self.activations, to_email, token)

    def send_password_reset(self, to_email, token):
        return self._record(self.resets, to_email, token)

    def send_otp(self, to_email, code):
        return self._record(self.otps, to_email, code)

    def send_email_change_notice(self, to_email, new_email):
        return self._record(self.notices, to_email, new_email)


class BrokenCache:
    """Cache whose every operation fails, for fail-open/fail-closed checks."""

    async def _boom(self, *args, **kwargs):
        raise ConnectionError("cache down")

    incr_with_ttl = set = set_if_absent = get = delete = ttl = close = _boom

    def verify_connection(self):
        raise ConnectionError("cache down")


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
    return Settings(jwt_secret=TEST_SECRET, test_mode=True)


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock.time)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def broken_cache():
    return BrokenCache()


@pytest.fixture
def revocation(cache):
    return RevocationRegistry(cache)


@pytest.fixture
def tokens(settings, revocation, clock):
    return TokenService.from_settings(settings, revocation=revocation, clock=clock.time)


@pytest.fixture
def guard(cache, settings):
    return BruteForceGuard(
        cache,
        max_attempts=settings.login_max_attempts,
        window_seconds=settings.login_window_seconds,
    )


@pytest.fixture
def auth_service(store, cache, settings, tokens, guard, revocation, mailer, clock):
    return AuthService(
        store,
        cache,
        settings,
        tokens=tokens,
        guard=guard,
        revocation=revocation,
        mailer=mailer,
        clock=clock.now,
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
