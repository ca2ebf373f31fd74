"""Concurrent claims against the memory store and a file-backed SQLite database.

The file database gives every session its own connection, so concurrent claims
really contend for SQLite's write lock.
"""
import asyncio
from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bot.models import Base
from bot.services.allocation import AllocationEngine
from bot.services.context import RequesterContext
from bot.services.inventory_store import AccountDraft, CooldownHit
from bot.services.memory_store import MemoryInventoryStore
from bot.services.policy import AccessPolicy
from bot.services.results import CooldownActive, StockExhausted
from bot.services.sql_store import SqlInventoryStore

NOW = datetime(2024, 1, 1, 12, 0, 0)


@pytest.fixture(params=["memory", "sqlite-file"])
async def race_store(request, tmp_path):
    if request.param == "memory":
        yield MemoryInventoryStore()
        return
    db = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'claims.db'}")
    async with db.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SqlInventoryStore(async_sessionmaker(db, class_=AsyncSession, expire_on_commit=False, autoflush=False))
    await db.dispose()


@pytest.fixture
def race_engine(race_store, clock):
    return AllocationEngine(race_store, policy=AccessPolicy(race_store, clock=clock, owner_id=""), clock=clock)


async def stock(engine, name: str, count: int) -> None:
    admin = RequesterContext("admin", is_platform_admin=True)
    lines = "\n".join(f"{name.lower()}{i}@x.com:pw" for i in range(count))
    added = await engine.add_from_text(lines, name, admin, create_category=True)
    assert len(added) == count


def user(identity: str) -> RequesterContext:
    return RequesterContext(identity=identity, display_name=identity)


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_an_account(race_engine):
    await stock(race_engine, "Race", 3)
    scope = await race_engine.resolve_scope("1001")

    results = await asyncio.gather(*(race_engine.claim(user(f"U{i}"), "Race", scope) for i in range(10)))

    won = [r for r in results if not isinstance(r, StockExhausted)]
    assert len(won) == 3
    assert len({a.id for a in won}) == 3
    assert sum(isinstance(r, StockExhausted) for r in results) == 7


@pytest.mark.asyncio
async def test_same_requester_racing_itself_gets_one_account(race_engine, race_store):
    await stock(race_engine, "Solo", 2)
    scope = await race_engine.resolve_scope("1001")

    results = await asyncio.gather(
        race_engine.claim(user("U1"), "Solo", scope),
        race_engine.claim(user("U1"), "Solo", scope),
    )

    cooled = [r for r in results if isinstance(r, CooldownActive)]
    assert len(cooled) == 1
    assert cooled[0].remaining_seconds == 3600
    assert await race_store.count_generated_by("U1") == 1
    actions = [e.action for e in await race_store.list_logs()]
    assert actions.count("ACCOUNT_GENERATED") == 1
    assert actions.count("COOLDOWN_ACTIVE") == 1


@pytest.mark.asyncio
async def test_store_enforces_cooldown_inside_the_claim(race_store):
    category = await race_store.create_category("Direct", None, NOW)
    await race_store.add_accounts(category.id, [AccountDraft(f"d{i}@x.com", "pw") for i in range(2)], NOW)

    results = await asyncio.gather(
        *(race_store.claim_next_available(category.id, "U1", "1001", NOW, cooldown_seconds=3600) for _ in range(2))
    )

    assert sum(isinstance(r, CooldownHit) for r in results) == 1
    [hit] = [r for r in results if isinstance(r, CooldownHit)]
    assert hit.last_claimed_at == NOW
    assert await race_store.count_generated_by("U1") == 1
    # Refused claim left the account untouched
    available = await race_store.list_accounts(NOW, category_id=category.id, status="available")
    assert len(available) == 1
