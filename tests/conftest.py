import asyncio
import inspect
import os
import sys
from pathlib import Path

# Settings read from the environment (app factory, bootstrap script) must not
# demand production secrets during tests
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SESSION_SWEEP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gatehide.config import Settings, reset_settings_cache  # noqa: E402
from gatehide.service.auth import AuthService  # noqa: E402
from gatehide.service.runtime import Runtime  # noqa: E402
from gatehide.storage.memory import MemoryStore  # noqa: E402
from gatehide.storage.models import Namespace  # noqa: E402

USER_PASSWORD = "PlayerPass123!"
ADMIN_PASSWORD = "AdminPass123!"


class RecordingNotifier:
    """Captures notifications instead of delivering them."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send_notification(self, recipient, subject, content, template_data):
        if self.fail:
            raise ConnectionError("smtp relay unavailable")
        self.sent.append(
            {
                "recipient": recipient,
                "subject": subject,
                "content": content,
                "template_data": dict(template_data),
            }
        )
        return True

    def last_for(self, recipient):
        for message in reversed(self.sent):
            if message["recipient"] == recipient:
                return message
        return None


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
        app_base_url="https://app.example.com",
        session_sweep_interval_seconds=0,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(memory_store, settings, notifier):
    """Create auth service for testing."""
    return AuthService.build(memory_store, settings, notifier)


@pytest.fixture
def test_user(auth_service):
    """A standard-user identity with a known password."""
    return asyncio.run(
        auth_service.create_identity(
            Namespace.USER, "player@example.com", "Player One", USER_PASSWORD
        )
    )


@pytest.fixture
def test_admin(auth_service):
    """An administrator identity with a known password."""
    return asyncio.run(
        auth_service.create_identity(
            Namespace.ADMIN, "ops@example.com", "Ops Admin", ADMIN_PASSWORD
        )
    )


@pytest.fixture
def runtime(settings, memory_store, notifier):
    return Runtime(settings, store=memory_store, notifier=notifier)


@pytest.fixture
def client(runtime):
    """Create a test client for the API."""
    from fastapi.testclient import TestClient

    from gatehide.app import create_app

    with TestClient(create_app(runtime)) as test_client:
        yield test_client


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
