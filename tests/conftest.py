import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# must happen before any framegate import reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="framegate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-0123456789")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "64")
os.environ.setdefault("CLEANUP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from framegate.config import Settings  # noqa: E402
from framegate.service.runtime import reset_runtime_for_tests  # noqa: E402
from framegate.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Str0ng!Pass"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh snapshot dir so memory-store state never leaks between tests
    monkeypatch.setenv("STATE_DIR", str(tmp_path / "state"))
    reset_runtime_for_tests()
    yield
    monkeypatch.undo()  # rebuild from the session env, not the test's overrides
    reset_runtime_for_tests()


@pytest.fixture
def settings() -> Settings:
    return Settings.from_env()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore(max_refresh_tokens_per_user=5)


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
