import asyncio
import inspect
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

# Environment for anything that reads settings before fixtures run
_test_tmp_dir = tempfile.mkdtemp(prefix="korella_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from korella.app import create_app  # noqa: E402
from korella.config import Settings  # noqa: E402
from korella.service.auth import AuthService  # noqa: E402
from korella.service.lifecycle import trial_expiry  # noqa: E402
from korella.service.runtime import build_runtime  # noqa: E402
from korella.storage.memory import MemoryStore  # noqa: E402
from korella.storage.models import AccountStatus, SubscriptionTier, User  # noqa: E402

TEST_PASSWORD = "Correct-Horse-9"


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@dataclass
class RecordingMailer:
    """Mailer double that keeps every message instead of sending it."""

    verification: List[tuple] = field(default_factory=list)
    resets: List[tuple] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)
    fail: bool = False

    def send_verification_email(self, user, token, *, email=None) -> bool:
        self.verification.append((email or user.email, token))
        return not self.fail

    def send_password_reset_email(self, user, token) -> bool:
        self.resets.append((user.email, token))
        return not self.fail

    def send_password_changed_email(self, user) -> bool:
        self.changed.append(user.email)
        return not self.fail

    def last_verification_token(self) -> str:
        return self.verification[-1][1]

    def last_reset_token(self) -> str:
        return self.resets[-1][1]


def make_settings(**overrides) -> Settings:
    values = dict(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
        redis_url=None,
        session_cookie_secure=False,
        # Cheap argon2 parameters keep the suite fast
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_microsoft_client_id="microsoft-client",
        oauth_microsoft_client_secret="microsoft-secret",
        app_base_url="https://app.korella.test",
        api_base_url="https://api.korella.test",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def auth_service(memory_store, settings, mailer, clock):
    return AuthService(memory_store, settings, mailer=mailer, clock=clock)


@pytest.fixture
def make_user(memory_store, auth_service, clock, settings):
    """Insert a user directly in the store, active and verified by default."""

    def _make(
        email: str = "agent@example.com",
        password: Optional[str] = TEST_PASSWORD,
        *,
        status: AccountStatus = AccountStatus.ACTIVE,
        tier: SubscriptionTier = SubscriptionTier.TRIAL,
        verified: bool = True,
        trial_expires_at: Optional[datetime] = None,
    ) -> User:
        if tier == SubscriptionTier.TRIAL and trial_expires_at is None and verified:
            trial_expires_at = trial_expiry(clock(), settings.trial_period_days)
        return memory_store.create_user(
            User.new(
                email,
                full_name="Test Agent",
                password_hash=auth_service.passwords.hash(password) if password else None,
                account_status=status,
                subscription_tier=tier,
                email_verified=verified,
                verified_at=clock() if verified else None,
                trial_expires_at=trial_expires_at,
            )
        )

    return _make


@pytest.fixture
def runtime(settings, memory_store, mailer, clock):
    return build_runtime(settings, store=memory_store, mailer=mailer, clock=clock)


@pytest.fixture
def client(runtime):
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
