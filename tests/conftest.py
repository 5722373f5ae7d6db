import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before any import that builds settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("GOVSSO_ISSUER_URI", "https://govsso.test/")
os.environ.setdefault("GOVSSO_CLIENT_ID", "client-a")
os.environ.setdefault("GOVSSO_CLIENT_SECRET", "secret-a")
os.environ.setdefault("GOVSSO_REDIRECT_URI", "http://testserver/login/oauth2/code/govsso")
os.environ.setdefault("GOVSSO_JWS_ALGORITHMS", "HS256")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("ENABLE_HSTS", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from govsso_client.service.runtime import reset_runtime_for_tests  # noqa: E402


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
