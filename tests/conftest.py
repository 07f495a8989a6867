import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="clinicore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("PERSIST_MEMORY_STORE", "false")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("AUTH_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("GEMINI_CLIENT_ID", "gemini-test-client")
os.environ.setdefault("GEMINI_REDIRECT_URI", "https://app.example.test/v1/integrations/gemini/callback")
os.environ.setdefault("GOOGLE_CALENDAR_CLIENT_ID", "calendar-test-client")
os.environ.setdefault(
    "GOOGLE_CALENDAR_REDIRECT_URI",
    "https://app.example.test/v1/integrations/google_calendar/callback",
)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from clinicore.service.runtime import reset_runtime_for_tests  # noqa: E402
from clinicore.service.two_factor import TwoFactorEngine  # noqa: E402
from clinicore.storage.memory import MemoryStore  # noqa: E402

FIXED_CODE = "123456"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def store():
    return MemoryStore(persist=False)


@pytest.fixture
def fixed_two_factor_code(monkeypatch):
    """Make every emailed code predictable."""
    monkeypatch.setattr(TwoFactorEngine, "generate_code", staticmethod(lambda: FIXED_CODE))
    return FIXED_CODE


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
