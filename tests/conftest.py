import asyncio
import inspect
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
# Local-only tiered cache; unit tests plug in FakeSharedCache where the shared layer matters
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.config import Settings  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Callable wall clock that tests move forward explicitly."""

    def __init__(self, start: float | None = None):
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSharedCache:
    """In-memory stand-in for the Redis shared layer.

    ``delay`` makes every call sleep first; ``fail`` makes every call raise.
    """

    def __init__(self):
        self.values: dict[str, str] = {}
        self.tags: dict[str, set[str]] = {}
        self.delay = 0.0
        self.fail = False
        self.calls: list[str] = []

    async def _enter(self, op: str) -> None:
        self.calls.append(op)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("shared cache unavailable")

    async def get_value(self, key):
        await self._enter("get")
        return self.values.get(key)

    async def set_value(self, key, value, ttl_seconds):
        await self._enter("set")
        self.values[key] = value

    async def delete_values(self, keys):
        await self._enter("delete")
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
        return removed

    async def add_tag_member(self, tag, key, ttl_seconds):
        await self._enter("tag")
        self.tags.setdefault(tag, set()).add(key)

    async def pop_tag_members(self, tag):
        await self._enter("pop_tag")
        return self.tags.pop(tag, set())


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_days=7,
        challenge_token_ttl_minutes=5,
        token_clock_skew_seconds=60,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=TEST_JWT_SECRET, persist=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_shared_cache():
    return FakeSharedCache()


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
