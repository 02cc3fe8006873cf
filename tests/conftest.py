import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before any import that builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
# Plain-http TestClient traffic must still carry the session cookie
os.environ.setdefault("APP_ENV", "staging")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("AUTH_SESSION_SECRET", "test-session-secret-for-testing-only")
os.environ.setdefault("AUTH_PASSWORD_PEPPER", "test-pepper-for-testing-only")
os.environ.setdefault("AUTH_SIGNUP_INVITE_KEY", "test-invite-key")
# Lowest accepted cost keeps the suite fast
os.environ.setdefault("AUTH_PASSWORD_PBKDF2_ITERATIONS", "100000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantgate.service.runtime import reset_runtime_for_tests  # noqa: E402


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
