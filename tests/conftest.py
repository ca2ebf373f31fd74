"""Pytest configuration and fixtures for engine, store and API tests."""
import os

# Set test env BEFORE any imports that use config
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STORAGE_BACKEND"] = "sql"
os.environ["INITIAL_ADMIN_PASSWORD"] = "testpass123"
os.environ["INITIAL_ADMIN_USERNAME"] = "admin"
os.environ["DISCORD_OWNER_ID"] = "owner-1"
os.environ["INTERNAL_API_SECRET"] = ""

from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bot.models import Base
from bot.models.base import init_db
from bot.services.allocation import AllocationEngine
from bot.services.context import RequesterContext
from bot.services.memory_store import MemoryInventoryStore
from bot.services.policy import AccessPolicy
from bot.services.sql_store import SqlInventoryStore
from web.api.main import app


class FakeClock:
    """Injectable clock returning a settable naive-UTC time."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
async def _init_db():
    """Ensure database tables exist before each test (ASGI lifespan doesn't run with httpx)."""
    await init_db()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def sql_session_factory():
    """Fresh in-memory database per test, independent of the app's engine."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request, sql_session_factory):
    """Each test using this runs once per storage backend."""
    if request.param == "memory":
        return MemoryInventoryStore()
    return SqlInventoryStore(sql_session_factory)


@pytest.fixture
def engine(store, clock):
    return AllocationEngine(store, policy=AccessPolicy(store, clock=clock, owner_id="owner-1"), clock=clock)


@pytest.fixture
def admin():
    return RequesterContext(identity="admin-1", display_name="Admin", is_platform_admin=True)


@pytest.fixture
async def guild(engine):
    """Guild scope with default settings (3600s cooldown, no role gates)."""
    return await engine.resolve_scope("1001", "Test Guild")


@pytest.fixture
async def client():
    """Async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
async def auth_headers(client):
    """Login as admin and return Authorization headers for protected endpoints."""
    r = await client.post(
        "/api/auth/login",
        json={"username": "admin", "password": "testpass123"},
    )
    assert r.status_code == 200, f"Login failed: {r.text}"
    token = r.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}
