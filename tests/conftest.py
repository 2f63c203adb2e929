import asyncio
import inspect
import os
import sys
from pathlib import Path

# Quiet, human-readable logs before flowkernel.logging configures structlog
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("FLOW_RETRY_BACKOFF_MS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from flowkernel.config import Settings  # noqa: E402
from flowkernel.logging import run_id_var  # noqa: E402


@pytest.fixture
def settings():
    """Settings with no retry backoff so failing steps do not sleep."""
    return Settings(retry_backoff_ms=0)


@pytest.fixture(autouse=True)
def reset_run_id():
    token = run_id_var.set(None)
    yield
    run_id_var.reset(token)


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
