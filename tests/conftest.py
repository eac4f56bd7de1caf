import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="labrecords_test_")
os.environ.setdefault("DATA_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps rate limits in-process for deterministic runs
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOGIN_FAILURE_DELAY_MS_MIN", "0")
os.environ.setdefault("LOGIN_FAILURE_DELAY_MS_MAX", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from labrecords.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

ADMIN_USERNAME = "lab-admin"
ADMIN_PASSWORD = "AdminPassword123!"
STANDARD_USERNAME = "technician"
STANDARD_PASSWORD = "TechPassword123!"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own DATA_ROOT so memory store snapshots never leak
    monkeypatch.setenv("DATA_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def admin_identity():
    runtime = get_runtime()
    return runtime.auth.provision(ADMIN_USERNAME, ADMIN_PASSWORD, role="admin")


@pytest.fixture
def standard_identity():
    runtime = get_runtime()
    return runtime.auth.provision(
        STANDARD_USERNAME, STANDARD_PASSWORD, company_name="Béton Contrôle"
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
