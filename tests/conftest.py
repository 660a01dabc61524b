import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ["USE_MEMORY_STORE"] = "true"
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Empty REDIS_URL keeps every test on the in-process MemoryCache
os.environ["REDIS_URL"] = ""
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from algoauth.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingNotifier:
    """Captures reset and verification tokens instead of emailing them."""

    def __init__(self):
        self.sent = []

    def send_password_reset(self, to_email, token):
        self.sent.append(("reset", to_email, token))
        return True

    def send_email_verification(self, to_email, token):
        self.sent.append(("verify", to_email, token))
        return True

    def last_token(self, kind, to_email=None):
        for sent_kind, email, token in reversed(self.sent):
            if sent_kind == kind and (to_email is None or email == to_email):
                return token
        return None


@pytest.fixture(autouse=True)
def reset_runtime_state():
    notifier = RecordingNotifier()
    reset_runtime_for_tests(notifier=notifier)
    yield notifier
    reset_runtime_for_tests()


@pytest.fixture
def outbox(reset_runtime_state):
    return reset_runtime_state


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
