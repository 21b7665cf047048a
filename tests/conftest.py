import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before tenantauth reads its settings
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenantauth.config import Settings  # noqa: E402
from tenantauth.service.notification import NotificationService  # noqa: E402
from tenantauth.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from tenantauth.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
PASSWORD = "CorrectHorse42!"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier(NotificationService):
    """Notification service that keeps messages instead of sending them."""

    def __init__(self, settings, *, fail=False):
        super().__init__(settings)
        self.sent = []
        self.fail = fail

    def _send_email(self, to_email, subject, html_body, text_body=None):
        self.sent.append({"to": to_email, "subject": subject, "body": text_body})
        return not self.fail


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        jwt_expires_in="1h",
        user_default_roles=["user"],
        action_reset_password_validity=2,
        action_accept_terms_validity=48,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def notifier(settings):
    return RecordingNotifier(settings)


@pytest.fixture
def runtime(settings, store, notifier, clock):
    rt = Runtime(settings, store=store, notifier=notifier, clock=clock)
    rt.roles.ensure("user", ["read:own:users", "read:own:user-accounts"])
    yield rt
    rt.close()


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


@pytest.fixture
def make_member(runtime):
    """Factory creating a user with a password and one account."""
    from tenantauth.requests import CredentialRequest, UserAccountRequest, UserCreateRequest
    from tenantauth.storage.models import CredentialType

    def _make(
        email="member@example.com",
        password=PASSWORD,
        roles=("user",),
        organisation_id=None,
        establishment_id=None,
    ):
        user = runtime.users.create(
            UserCreateRequest(
                email=email,
                credentials=[CredentialRequest(type=CredentialType.PASSWORD, password=password)],
            )
        )
        account = runtime.accounts.create(
            UserAccountRequest(
                user_id=user.id,
                organisation_id=organisation_id,
                establishment_id=establishment_id,
                roles=list(roles),
            )
        )
        return user, account

    return _make
