import asyncio
import inspect
import os
import sys
import tempfile
from concurrent.futures import Executor, Future
from pathlib import Path

# Create temp directory for tests before any imports that might load settings
_test_tmp_dir = tempfile.mkdtemp(prefix="otplogin_test_")
os.environ.setdefault("DATA_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402
from argon2 import PasswordHasher  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from otplogin.config import Settings, reset_settings_cache  # noqa: E402
from otplogin.service.email import EmailService  # noqa: E402
from otplogin.service.runtime import Runtime  # noqa: E402
from otplogin.storage.failover import FailoverCache  # noqa: E402
from otplogin.storage.memory import MemoryStore  # noqa: E402
from otplogin.storage.memory_cache import MemoryCache  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-with-enough-entropy-0123456789"


class InlineExecutor(Executor):
    """Runs submitted work synchronously so mail side effects are observable."""

    def submit(self, fn, /, *args, **kwargs):
        future: Future = Future()
        try:
            result = fn(*args, **kwargs)
        except BaseException as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)
        return future


class RecordingEmailService(EmailService):
    """Captures outgoing codes instead of talking to SMTP."""

    def __init__(self):
        super().__init__()
        self.codes = {}
        self.welcomed = []

    def send_otp_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        self.codes[to_email] = code
        return True

    def send_welcome(self, to_email: str, name: str) -> bool:
        self.welcomed.append((to_email, name))
        return True


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def fast_hasher():
    """argon2id with minimal cost; production parameters are too slow for unit tests."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        use_memory_store=True,
        test_mode=True,
        allow_redis_fallback_dev=True,
        data_dir=str(tmp_path),
        jwt_secret=TEST_SECRET,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def mail():
    return RecordingEmailService()


@pytest.fixture
def runtime(settings, store, mail, fast_hasher):
    return Runtime(
        settings,
        store=store,
        cache=FailoverCache(None, MemoryCache()),
        email=mail,
        mail_executor=InlineExecutor(),
        otp_hasher=fast_hasher,
    )


@pytest.fixture
def client(runtime):
    from fastapi.testclient import TestClient

    from otplogin.app import create_app

    with TestClient(create_app(runtime)) as test_client:
        yield test_client


@pytest.fixture
def login(client, mail):
    """Sign up (if needed), request a code and exchange it for tokens."""

    def _login(email: str = "alice@example.com", name: str = "Alice") -> dict:
        client.post("/api/v1/auth/signup", json={"name": name, "email": email})
        response = client.post("/api/v1/auth/request-otp", json={"email": email})
        assert response.status_code == 200, response.text
        response = client.post(
            "/api/v1/auth/verify-otp", json={"email": email, "otp": mail.codes[email]}
        )
        assert response.status_code == 200, response.text
        return response.json()["data"]

    return _login


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
