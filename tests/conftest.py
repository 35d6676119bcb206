import asyncio
import inspect
import os
import sys
from pathlib import Path
from types import SimpleNamespace

os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenantguard.config import Settings, reset_settings_cache  # noqa: E402
from tenantguard.service.context import build_container  # noqa: E402
from tenantguard.storage.memory import MemoryCache, MemoryRecordStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
PASSWORD = "Correct-Horse-42"


class FakeClock:
    """Controllable epoch clock shared by tokens, TOTP and the memory cache."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingAudit:
    """Audit sink that keeps events in memory for assertions."""

    def __init__(self):
        self.events = []

    def log_event(self, name, context):
        self.events.append((name, dict(context)))

    def names(self):
        return [name for name, _ in self.events]


def make_settings(**overrides) -> Settings:
    values = {"jwt_secret": TEST_SECRET}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def hasher():
    # cheap parameters keep the suite fast; production uses library defaults
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def container(settings, clock, hasher, audit):
    return build_container(
        settings,
        records=MemoryRecordStore(),
        cache=MemoryCache(clock=clock),
        audit=audit,
        hasher=hasher,
        clock=clock,
    )


def seed(container):
    """Two tenants, three users and tenant-scoped roles."""
    creds = container.credentials
    creds.create_tenant("acme", "Acme", tenant_id=1)
    creds.create_tenant("globex", "Globex", tenant_id=2)
    admin = creds.create_principal("admin@acme.test", PASSWORD, 1, name="Admin")
    seller = creds.create_principal("seller@acme.test", PASSWORD, 1, name="Seller")
    outsider = creds.create_principal("owner@globex.test", PASSWORD, 2, name="Owner")
    creds.create_role(
        1, "admin", ["sales.create", "sales.view", "financeiro.export", "users.manage"]
    )
    creds.create_role(1, "sales_rep", ["sales.create", "sales.view"])
    creds.create_role(2, "admin", ["sales.create", "financeiro.export"])
    creds.assign_role(admin.id, "admin", 1)
    creds.assign_role(seller.id, "sales_rep", 1)
    creds.assign_role(outsider.id, "admin", 2)
    return SimpleNamespace(admin=admin, seller=seller, outsider=outsider)


@pytest.fixture
def seeded(container):
    return seed(container)


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
