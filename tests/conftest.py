import asyncio
import fnmatch
import inspect
import math
import os
import sys
import tempfile
import time
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# The runtime runs cache-less; fast-store behavior is covered with FakeRedis
os.environ["REDIS_URL"] = ""
# TestClient talks plain http, so the session cookie must not be Secure
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("SESSION_SWEEP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402
import redis  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.config import Settings  # noqa: E402
from authcore.service.email import Notifier  # noqa: E402
from authcore.service.passwords import CredentialPolicy  # noqa: E402
from authcore.service.rate_limit import RateLimiter  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.service.sessions import SessionManager  # noqa: E402
from authcore.service.tokens import TokenIssuer  # noqa: E402
from authcore.service.users import UserService  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402
from authcore.storage.redis_cache import RedisCache  # noqa: E402


class _FakePipeline:
    def __init__(self, backend: "FakeRedis"):
        self._backend = backend
        self._ops = []

    def __getattr__(self, name):
        method = getattr(self._backend, name)

        def queue(*args, **kwargs):
            self._ops.append((method, args, kwargs))
            return self

        return queue

    async def execute(self):
        return [await method(*args, **kwargs) for method, args, kwargs in self._ops]


class FakeRedis:
    """Async stand-in for the redis commands the fast store issues."""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise redis.exceptions.ConnectionError("fake redis unavailable")

    def _purge(self, key):
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    async def ping(self):
        self._check()
        return True

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        self._purge(key)
        if nx and key in self.data:
            return None
        self.data[key] = str(value) if isinstance(value, int) else value
        if ex:
            self.expiry[key] = time.monotonic() + ex
        else:
            self.expiry.pop(key, None)
        return True

    async def get(self, key):
        self._check()
        self._purge(key)
        return self.data.get(key)

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            self._purge(key)
            if key in self.data:
                removed += 1
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return removed

    async def exists(self, key):
        self._check()
        self._purge(key)
        return int(key in self.data)

    async def ttl(self, key):
        self._check()
        self._purge(key)
        if key not in self.data:
            return -2
        deadline = self.expiry.get(key)
        if deadline is None:
            return -1
        return max(0, math.ceil(deadline - time.monotonic()))

    async def expire(self, key, seconds, nx=False):
        self._check()
        self._purge(key)
        if key not in self.data:
            return False
        if nx and key in self.expiry:
            return False
        self.expiry[key] = time.monotonic() + seconds
        return True

    async def incr(self, key):
        self._check()
        self._purge(key)
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def getdel(self, key):
        self._check()
        self._purge(key)
        self.expiry.pop(key, None)
        return self.data.pop(key, None)

    async def scan_iter(self, match="*"):
        self._check()
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    async def aclose(self):
        self.closed = True


class RecordingNotifier(Notifier):
    """Notifier that records dispatched messages instead of sending them."""

    def __init__(self):
        super().__init__()
        self.sent = []

    def dispatch(self, send, *args, **kwargs):
        self.sent.append((send.__name__, args, kwargs))

    def last(self, kind):
        for name, args, kwargs in reversed(self.sent):
            if name == kind:
                return args, kwargs
        return None


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the process environment."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        google_client_id="client-123.apps.googleusercontent.com",
        google_client_secret="google-secret",
        google_callback_url="http://localhost:8000/v1/auth/google/callback",
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return RedisCache("redis://fake:6379/0", client=fake_redis)


@pytest.fixture
def tokens(settings):
    return TokenIssuer(settings)


@pytest.fixture
def policy():
    return CredentialPolicy()


@pytest.fixture
def sessions(store, cache, tokens, settings):
    return SessionManager(store, cache, tokens, settings)


@pytest.fixture
def users(store, sessions, settings):
    return UserService(store, sessions, settings)


@pytest.fixture
def limiter(cache):
    return RateLimiter(cache)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
