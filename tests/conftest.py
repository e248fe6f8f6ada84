import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before anything imports the package settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("REFRESH_FINGERPRINT_KEY", "test-fingerprint-key-not-for-production")
os.environ.setdefault("OTP_PEPPER", "test-otp-pepper-not-for-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenantgate.config import Settings  # noqa: E402
from tenantgate.service.auth import AuthOrchestrator  # noqa: E402
from tenantgate.service.credentials import CredentialStore  # noqa: E402
from tenantgate.service.keys import KeyManager, SoftwareKeyBackend  # noqa: E402
from tenantgate.service.ledger import RefreshTokenLedger  # noqa: E402
from tenantgate.service.otp import OTPManager  # noqa: E402
from tenantgate.service.rate_limit import RateLimiter  # noqa: E402
from tenantgate.service.tokens import TokenService  # noqa: E402
from tenantgate.storage.memory import MemoryStore  # noqa: E402
from tenantgate.storage.memory_cache import MemoryCache  # noqa: E402

TENANT = "tenant-a"
UNIT = "unit-101"
PASSWORD = "Abcdef1!"


class FakeClock:
    """Manually advanced UTC clock shared by every component under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class CapturingNotifier:
    """Records delivered codes instead of calling the messaging API."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    async def send_code(self, phone: str, code: str) -> bool:
        if self.fail:
            return False
        self.sent.append((phone, code))
        return True

    def last_code(self) -> str:
        return self.sent[-1][1]


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        use_memory_cache=True,
        refresh_fingerprint_key="test-fingerprint-key-not-for-production",
        otp_pepper="test-otp-pepper-not-for-production",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def limiter(cache):
    return RateLimiter(cache)


@pytest.fixture
def key_manager(settings, clock):
    return KeyManager(
        SoftwareKeyBackend(settings.key_size),
        retention_seconds=settings.effective_key_retention_seconds,
        max_retained_keys=settings.max_retained_keys,
        clock=clock,
    )


@pytest.fixture
def token_service(key_manager, settings, clock):
    return TokenService(key_manager, settings, clock=clock)


@pytest.fixture
def credentials(memory_store, limiter, settings, clock):
    return CredentialStore(memory_store, limiter, settings, clock=clock)


@pytest.fixture
def notifier():
    return CapturingNotifier()


@pytest.fixture
def otp_manager(memory_store, limiter, notifier, settings, clock):
    return OTPManager(memory_store, limiter, notifier, settings, clock=clock)


@pytest.fixture
def ledger(memory_store, settings, clock):
    return RefreshTokenLedger(memory_store, settings.refresh_fingerprint_key, clock=clock)


@pytest.fixture
def orchestrator(credentials, otp_manager, token_service, ledger, key_manager, settings, clock):
    return AuthOrchestrator(
        credentials=credentials,
        otp=otp_manager,
        tokens=token_service,
        ledger=ledger,
        keys=key_manager,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def resident(credentials):
    """An active user with a password and a phone."""
    return credentials.register(
        "resident@example.com",
        PASSWORD,
        tenant_id=TENANT,
        unit_id=UNIT,
        phone="+5215512345678",
    )


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
