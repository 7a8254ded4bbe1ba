import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gatehouse_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
# TestClient talks plain http, so Secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatehouse.service.accounts import AccountService  # noqa: E402
from gatehouse.service.auth import Authenticator, AuthService  # noqa: E402
from gatehouse.service.confirmation import ConfirmationService  # noqa: E402
from gatehouse.service.cookies import RememberCookieCipher  # noqa: E402
from gatehouse.service.email import OutboxMailer  # noqa: E402
from gatehouse.service.password_reset import PasswordResetService  # noqa: E402
from gatehouse.service.passwords import PasswordHasher  # noqa: E402
from gatehouse.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatehouse.service.tokens import TokenCodec  # noqa: E402
from gatehouse.storage.memory import MemoryStore  # noqa: E402
from gatehouse.storage.models import utcnow  # noqa: E402

TEST_SECRET = "unit-test-secret-that-is-long-enough-0123456789"


class FakeClock:
    """Settable epoch clock for token expiry tests."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Services:
    def __init__(self, store, hasher, clock):
        self.store = store
        self.hasher = hasher
        self.clock = clock
        self.mailer = OutboxMailer()
        self.codec = TokenCodec(TEST_SECRET, clock=clock)
        self.authenticator = Authenticator(store, hasher)
        self.auth = AuthService(store, self.authenticator, RememberCookieCipher(TEST_SECRET))
        self.confirmations = ConfirmationService(store, self.codec, self.mailer)
        self.password_resets = PasswordResetService(store, self.codec, self.mailer, hasher)
        self.accounts = AccountService(
            store, hasher, self.authenticator, self.auth, self.confirmations
        )

    def create_user(self, email, password="correct-horse-battery", *, confirmed=True):
        return self.store.create_user(
            email,
            self.hasher.hash(password),
            confirmed_at=utcnow() if confirmed else None,
        )


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so the memory store never reloads old users
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    yield reset_runtime_for_tests()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def fast_hasher():
    """argon2id with minimal cost parameters to keep unit tests quick."""
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def services(memory_store, fast_hasher, clock):
    return Services(memory_store, fast_hasher, clock)


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
