import asyncio
import inspect
import os
import sys
from pathlib import Path

# Settings are read from the environment at first use, so set them before imports
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("MFA_ENCRYPTION_KEY", "test-mfa-encryption-key-not-for-production")
os.environ.setdefault("GEOLOCATION_URL", "")
os.environ.setdefault("NEW_DEVICE_ALERTS", "false")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "2")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8192")

import pytest  # noqa: E402

TESTS_DIR = Path(__file__).resolve().parent
ROOT = TESTS_DIR.parent
for path in (ROOT, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from aegisid.service.context import RequestContext  # noqa: E402
from aegisid.service.runtime import reset_runtime_for_tests  # noqa: E402
from helpers import CHROME_UA, PASSWORD, FakeGeo, FakeSender, ManualClock  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def geo():
    return FakeGeo()


@pytest.fixture
def runtime(clock, sender, geo):
    """Runtime wired to the manual clock, the capturing sender and the geo stub."""
    return reset_runtime_for_tests(clock=clock, email_sender=sender, geolocation=geo)


@pytest.fixture
def ctx():
    return RequestContext(ip="198.51.100.7", user_agent=CHROME_UA, accept_language="en-US")


@pytest.fixture
def user(runtime):
    return runtime.credentials.create("alice", "alice@example.com", PASSWORD)


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
