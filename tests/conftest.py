import asyncio
import inspect
import os

# Environment defaults must be in place before settings are first read
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
os.environ.setdefault("SESSION_ENCRYPTION_KEY", "test-session-encryption-key-for-automation-0000")
os.environ.setdefault("MFA_ENCRYPTION_KEY", "test-mfa-encryption-key-for-automation-11111111")

import pytest  # noqa: E402

from custodian.clock import FrozenClock  # noqa: E402
from custodian.config import Settings, reset_settings_cache  # noqa: E402
from custodian.service.auth import AuthService  # noqa: E402
from custodian.service.context import RequestContext  # noqa: E402
from custodian.service.devices import TrustedDeviceEvaluator  # noqa: E402
from custodian.service.mfa import MFAEngine, generate_totp, totp_counter  # noqa: E402
from custodian.service.notifier import LOGGED, OTPMessage  # noqa: E402
from custodian.service.risk import RiskEngine  # noqa: E402
from custodian.service.sessions import SessionStore  # noqa: E402
from custodian.service.tokens import TokenService  # noqa: E402
from custodian.storage.memory import MemoryStore  # noqa: E402
from custodian.storage.memory_cache import MemoryCache  # noqa: E402

PASSWORD = "Correct-Horse-Battery-Staple-42"
BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"

SECRETS = {
    "jwt_secret": "unit-access-secret-for-automation-only-abcdefghij",
    "jwt_refresh_secret": "unit-refresh-secret-for-automation-only-klmnopqrst",
    "session_encryption_key": "unit-session-encryption-key-for-automation-uvwxyz",
    "mfa_encryption_key": "unit-mfa-encryption-key-for-automation-0123456789",
}


class RecordingNotifier:
    """Notifier double that keeps every dispatched message."""

    def __init__(self):
        self.messages: list[OTPMessage] = []
        self.statuses: list[tuple[str, str]] = []
        self._callbacks = []

    def on_status(self, callback):
        self._callbacks.append(callback)

    def dispatch(self, message: OTPMessage) -> str:
        reference = f"ref-{len(self.messages) + 1}"
        self.messages.append(message)
        for callback in self._callbacks:
            callback(reference, LOGGED)
        self.statuses.append((reference, LOGGED))
        return reference

    @property
    def last_code(self) -> str:
        return self.messages[-1].code


class Interleaving:
    """Backend proxy whose coroutine methods suspend once before delegating.

    Each call then behaves like a network round trip, so coroutines gathered
    against it genuinely interleave. Synchronous attributes pass through.
    """

    def __init__(self, target):
        self._target = target

    def __getattr__(self, name):
        attr = getattr(self._target, name)
        if not inspect.iscoroutinefunction(attr):
            return attr

        async def call(*args, **kwargs):
            await asyncio.sleep(0)
            return await attr(*args, **kwargs)

        return call


def _maybe_interleaved(request, backend):
    if request.node.get_closest_marker("interleaved"):
        return Interleaving(backend)
    return backend


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings_factory():
    def _build(**overrides) -> Settings:
        values = {"test_mode": True, "use_memory_cache": True, **SECRETS}
        values.update(overrides)
        return Settings(**values)

    return _build


@pytest.fixture
def settings(settings_factory):
    return settings_factory()


@pytest.fixture
def store(settings, request):
    return _maybe_interleaved(request, MemoryStore(mfa_encryption_key=settings.mfa_encryption_key))


@pytest.fixture
def cache(clock, request):
    return _maybe_interleaved(request, MemoryCache(clock))


@pytest.fixture
def risk(store, cache, settings, clock):
    return RiskEngine(store, store, cache, settings, clock)


@pytest.fixture
def tokens(cache, risk, settings, clock):
    return TokenService(cache, risk, settings, clock)


@pytest.fixture
def sessions(cache, tokens, settings, clock):
    return SessionStore(cache, tokens, settings, clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def mfa(store, cache, sessions, risk, notifier, settings, clock):
    return MFAEngine(store, store, cache, sessions, risk, notifier, settings, clock)


@pytest.fixture
def devices(store, sessions, risk, settings, clock):
    return TrustedDeviceEvaluator(store, store, sessions, risk, settings, clock)


@pytest.fixture
def auth(store, tokens, sessions, mfa, devices, risk, settings, clock):
    return AuthService(store, store, tokens, sessions, mfa, devices, risk, settings, clock)


@pytest.fixture
def principal(store, auth, clock):
    return store.create_principal(
        "Alice@Example.com",
        auth.hash_password(PASSWORD),
        phone_number="+1 (555) 010-1234",
        created_at=clock.now(),
    )


@pytest.fixture
def context():
    return RequestContext(
        ip_addr="203.0.113.10",
        user_agent=BROWSER_UA,
        device_fingerprint="fp-laptop-0001",
    )


@pytest.fixture
def totp_now(clock, settings):
    """Return a function producing the currently valid TOTP code for a secret."""

    def _code(secret: str, offset_steps: int = 0) -> str:
        counter = totp_counter(clock.now().timestamp(), settings.mfa_totp_interval_seconds)
        return generate_totp(secret, counter + offset_steps)

    return _code


@pytest.fixture
def enable_totp(mfa, clock, settings, totp_now):
    """Enroll and confirm TOTP, then step past the time steps used for confirmation."""

    async def _enable(principal_id: str, label: str = "alice@example.com"):
        enrollment = await mfa.enroll_totp(principal_id, label)
        result = await mfa.confirm_enrollment(
            principal_id,
            enrollment.method_id,
            totp_now(enrollment.secret),
            RequestContext(ip_addr="198.51.100.7", user_agent=BROWSER_UA),
        )
        clock.advance(seconds=settings.mfa_totp_interval_seconds * (2 * settings.mfa_totp_window + 1))
        return enrollment, result

    return _enable


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
    config.addinivalue_line(
        "markers", "interleaved: every store and cache call suspends the event loop once"
    )
