import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before any import that might build the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("COOKIE_SECURE", "false")
# No REDIS_URL: tests exercise the store-only blacklist path
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenantguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantguard.storage.models import Role  # noqa: E402

SUPERADMIN_EMAIL = "root@example.com"
DEFAULT_PASSWORD = "Correct-horse-9"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh memory store state per test
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    runtime = reset_runtime_for_tests()
    yield runtime
    # Restore the environment before re-initializing so the teardown reset
    # does not pick up per-test env overrides or the test's tmp_path state
    monkeypatch.undo()
    reset_runtime_for_tests()


@pytest.fixture
def runtime(reset_runtime_state):
    return reset_runtime_state


@pytest.fixture
def make_user(runtime):
    """Create a user directly in the store and return it."""

    def _make_user(
        email: str,
        *,
        password: str = DEFAULT_PASSWORD,
        role: Role = Role.CASHIER,
        tenant_id=None,
        name: str = "Test User",
        is_active: bool = True,
    ):
        return runtime.store.create_user(
            name,
            email,
            runtime.auth.hash_password(password),
            role=role,
            tenant_id=tenant_id,
            is_active=is_active,
        )

    return _make_user


@pytest.fixture
def tenant(runtime):
    return runtime.store.create_tenant("Acme Retail")


@pytest.fixture
def superadmin(make_user):
    return make_user(SUPERADMIN_EMAIL, role=Role.SUPER_ADMIN, name="Root")


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
