import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Environment must be in place before any import that reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="mailshare_test_")
os.environ.setdefault("DATA_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Events stay in-process; no Redis needed for the suite
os.environ["REDIS_URL"] = ""
os.environ.pop("MEMORY_STORE_PATH", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from mailshare_admin.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Settable UTC clock shared by the registry, token issuer and gate."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stack(clock):
    """Services over a fresh MemoryStore and in-process event bus."""
    from argon2 import PasswordHasher, Type

    from mailshare_admin.config import get_settings
    from mailshare_admin.service.audit import AuditFanout
    from mailshare_admin.service.auth import AdminAuthService
    from mailshare_admin.service.events import InMemoryEventBus
    from mailshare_admin.service.gate import RequestGate
    from mailshare_admin.service.policy import StoreInactivityPolicy
    from mailshare_admin.service.revocation import RevocationService
    from mailshare_admin.service.sessions import SessionRegistry
    from mailshare_admin.service.tokens import TokenIssuer
    from mailshare_admin.storage.memory import MemoryStore

    settings = get_settings()
    store = MemoryStore(secret_key=settings.jwt_secret)
    bus = InMemoryEventBus()
    hasher = PasswordHasher(type=Type.ID)
    registry = SessionRegistry(store, clock=clock)
    tokens = TokenIssuer(settings, clock=clock)
    policy = StoreInactivityPolicy(store)
    audit = AuditFanout(store, bus, clock=clock)
    return SimpleNamespace(
        settings=settings,
        store=store,
        bus=bus,
        hasher=hasher,
        registry=registry,
        tokens=tokens,
        policy=policy,
        audit=audit,
        gate=RequestGate(registry, tokens, policy, audit, clock=clock),
        revocation=RevocationService(store, registry, hasher),
        auth=AdminAuthService(
            store, settings, audit, registry, tokens, password_hasher=hasher
        ),
        clock=clock,
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
