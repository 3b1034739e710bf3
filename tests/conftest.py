import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="taskgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Empty REDIS_URL selects the in-process session and rate limit fallbacks
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taskgate.app import create_app  # noqa: E402
from taskgate.config import Settings, reset_settings_cache  # noqa: E402
from taskgate.service.runtime import build_runtime  # noqa: E402
from taskgate.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Str0ng@Pass"
OTHER_PASSWORD = "N3w@Password"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 6, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        jwt_secret="unit-access-secret-0123456789abcdef",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdef",
        # Cheap argon2 parameters keep the suite fast
        password_hash_time_cost=1,
        password_hash_memory_cost=8192,
        password_hash_parallelism=1,
        rate_limit_max_requests=1000,
        auth_rate_limit_max_requests=1000,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def runtime(settings, clock):
    rt = build_runtime(settings, clock=clock)
    yield rt
    asyncio.run(rt.close())


@pytest.fixture
def app(settings, clock):
    return create_app(settings, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def register_payload(email="jane@example.com", password=STRONG_PASSWORD, **extra):
    payload = {
        "email": email,
        "password": password,
        "firstName": "Jane",
        "lastName": "Doe",
    }
    payload.update(extra)
    return payload


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


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
