import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before credvault.config or credvault.app is imported
_test_tmp_dir = tempfile.mkdtemp(prefix="credvault_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-for-testing-only-0123456789")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only-9876543210")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from credvault.config import Settings  # noqa: E402
from credvault.service.auth import AuthService  # noqa: E402
from credvault.service.runtime import reset_runtime_for_tests  # noqa: E402
from credvault.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Correct-Horse-9"


class FakeClock:
    """Injectable ``now`` callable that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


class RecordingNotifier:
    """Notification channel double that keeps every token it was asked to send."""

    def __init__(self):
        self.verifications: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []
        self.fail_verification = False
        self.fail_reset = False
        self.raise_verification = False
        self.raise_reset = False
        self.sent: list[tuple[str, str]] = []

    def send(self, to_email: str, subject: str, text_body: str, html_body=None) -> bool:
        self.sent.append((to_email, subject))
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        self.verifications.append((to_email, token))
        if self.raise_verification:
            raise ConnectionError("mail relay unreachable")
        return not self.fail_verification

    def send_password_reset(self, to_email: str, token: str) -> bool:
        self.resets.append((to_email, token))
        if self.raise_reset:
            raise ConnectionError("mail relay unreachable")
        return not self.fail_reset

    def last_verification_token(self) -> str:
        return self.verifications[-1][1]

    def last_reset_token(self) -> str:
        return self.resets[-1][1]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path_factory, monkeypatch):
    # fresh snapshot directory so the runtime's memory store starts empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path_factory.mktemp("runtime")))
    reset_runtime_for_tests()
    yield
    # restore env patched by the test before rebuilding runtime state
    monkeypatch.undo()
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        access_token_secret="unit-access-secret-0123456789-abcdefghijklmnop",
        refresh_token_secret="unit-refresh-secret-9876543210-qrstuvwxyzabcd",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), lock_timeout_seconds=2.0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(memory_store, settings, notifier, clock):
    return AuthService(memory_store, settings, notifier=notifier, now=clock)


@pytest.fixture
def registered_user(auth_service):
    return auth_service.register("alice@example.com", STRONG_PASSWORD, name="Alice")


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
