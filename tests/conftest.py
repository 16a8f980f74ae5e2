import pytest
import os
import sys
from typing import AsyncGenerator, Callable, Generator
from fastapi.testclient import TestClient

# Add the parent directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# The process-wide engine is built at import time; keep it off the disk
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from main import app
import api.dependencies as dependencies
import core.cache as cache_module
from core.cache import DerivedAttributeCaches, IconHashCache, ThemeCache
from core.database import build_engine, create_db_and_tables
from core.models import Livestream, User
from core.storage import Storage
from providers.icon_provider import FallbackIconProvider
from services.engagement_service import EngagementService
from services.moderation_service import ModerationService
from services.statistics_service import StatisticsService
from services.user_service import UserService

TEST_DATABASE_URL = "sqlite+aiosqlite://"


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def caches(fake_clock) -> DerivedAttributeCaches:
    """Fresh caches driven by the fake clock."""
    return DerivedAttributeCaches(
        icon_hash=IconHashCache(ttl=100, clock=fake_clock),
        theme=ThemeCache(ttl=100, clock=fake_clock),
    )


@pytest.fixture
async def storage() -> AsyncGenerator[Storage, None]:
    """Storage over a fresh in-memory database."""
    engine = build_engine(TEST_DATABASE_URL)
    await create_db_and_tables(engine)
    yield Storage(engine, timeout=5.0)
    await engine.dispose()


@pytest.fixture
def fallback_icon() -> FallbackIconProvider:
    return FallbackIconProvider(image=b"<svg fallback/>")


@pytest.fixture
def user_service(storage, caches, fallback_icon) -> UserService:
    return UserService(storage, caches, fallback_icon)


@pytest.fixture
def moderation_service(storage) -> ModerationService:
    return ModerationService(storage)


@pytest.fixture
def engagement_service(storage, user_service, moderation_service) -> EngagementService:
    return EngagementService(storage, user_service, moderation_service)


@pytest.fixture
def statistics_service(storage) -> StatisticsService:
    return StatisticsService(storage)


@pytest.fixture
def seed(storage) -> Callable:
    """Insert rows directly, bypassing the services. Returns the rows with ids."""

    async def _seed(*rows):
        async with storage.unit_of_work() as tx:
            for row in rows:
                tx.session.add(row)
            await tx.session.flush()
        return rows

    return _seed


@pytest.fixture
async def streamer_with_livestream(seed):
    """A streamer "alice" owning one livestream, plus a viewer "bob"."""
    alice, bob = await seed(User(name="alice"), User(name="bob"))
    (livestream,) = await seed(Livestream(user_id=alice.id, title="alice live"))
    return alice, bob, livestream


@pytest.fixture
def test_client(monkeypatch) -> Generator[TestClient, None, None]:
    """Test client over a fresh in-memory database and fresh caches."""
    monkeypatch.setattr(dependencies, "_storage", Storage(build_engine(TEST_DATABASE_URL)))
    monkeypatch.setattr(dependencies, "_fallback_icon", FallbackIconProvider(image=b"<svg fallback/>"))
    monkeypatch.setattr(cache_module, "_caches", None)
    with TestClient(app) as client:
        yield client


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.delenv("FALLBACK_ICON_PATH", raising=False)
