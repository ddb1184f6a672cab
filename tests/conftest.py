import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="formfind_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# process-local rate limits and turn gate keep tests independent of a Redis server
os.environ.setdefault("REDIS_URL", "")
# no artificial delay between streamed words
os.environ.setdefault("STREAM_SMOOTHING_DELAY_MS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from formfind.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    from formfind.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def user_session(runtime):
    """A fresh user with an open session: ``(user, session)``."""
    import uuid

    user = runtime.store.create_user(f"user_{uuid.uuid4().hex[:8]}@example.com")
    session = runtime.store.create_session(user.id)
    return user, session


@pytest.fixture
def auth_headers(user_session):
    _, session = user_session
    return {"Authorization": f"Bearer {session.id}"}


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
