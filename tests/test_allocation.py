"""Allocation engine behaviour against both storage backends."""
from datetime import timedelta

import pytest

from bot.models import AccountStatus, LogType
from bot.services.allocation import AllocationEngine
from bot.services.context import RequesterContext
from bot.services.inventory_store import AccountDraft, StoreError
from bot.services.memory_store import MemoryInventoryStore
from bot.services.policy import AccessPolicy
from bot.services.results import (
    CategoryNotFound,
    CooldownActive,
    NotFoundError,
    PermissionDenied,
    StockExhausted,
    StorageFailure,
    ValidationError,
)


def user(identity: str, *roles: str) -> RequesterContext:
    return RequesterContext(identity=identity, display_name=identity, role_ids=frozenset(roles))


async def stock(engine, admin, category: str, *lines: str):
    accounts = await engine.add_from_text("\n".join(lines), category, admin, create_category=True)
    assert isinstance(accounts, list), accounts
    return accounts


async def log_count(store) -> int:
    return len(await store.list_logs())


@pytest.mark.asyncio
async def test_end_to_end_scenario(engine, admin, guild):
    """Claim, cooldown, exhaustion, restock, claim again."""
    [account] = await stock(engine, admin, "Streaming", "a@x.com:pw1")

    claimed = await engine.claim(user("U1"), "Streaming", guild)
    assert claimed.email == "a@x.com"
    assert claimed.password == "pw1"
    assert claimed.status == AccountStatus.GENERATED.value
    assert claimed.generated_by == "U1"

    again = await engine.claim(user("U1"), "Streaming", guild)
    assert isinstance(again, CooldownActive)
    assert again.remaining_seconds == 3600

    other = await engine.claim(user("U2"), "Streaming", guild)
    assert other == StockExhausted("Streaming")

    restocked = await engine.restock(account.id, admin)
    assert restocked.status == AccountStatus.AVAILABLE.value

    claimed2 = await engine.claim(user("U2"), "Streaming", guild)
    assert claimed2.id == account.id
    assert claimed2.generated_by == "U2"


@pytest.mark.asyncio
async def test_claim_then_release_restores_state(engine, admin, guild, store):
    [account] = await stock(engine, admin, "Music", "m@x.com:pw")
    before = await store.get_account(account.id)

    claimed = await engine.claim(user("U1"), "Music", guild)
    released = await engine.release(claimed.id)

    assert released.status == before.status == AccountStatus.AVAILABLE.value
    assert released.generated_by is None
    assert released.generated_at is None
    assert (released.email, released.password, released.category_id) == (
        before.email,
        before.password,
        before.category_id,
    )


@pytest.mark.asyncio
async def test_release_is_idempotent(engine, admin, guild, store):
    [account] = await stock(engine, admin, "Music", "m@x.com:pw")
    await engine.claim(user("U1"), "Music", guild)

    first = await engine.release(account.id, reason="dm closed")
    logs_after_first = await log_count(store)
    second = await engine.release(account.id)

    assert first.status == second.status == AccountStatus.AVAILABLE.value
    assert await log_count(store) == logs_after_first
    assert isinstance(await engine.release(9999), NotFoundError)


@pytest.mark.asyncio
async def test_cooldown_counts_down_to_zero(engine, admin, guild, clock):
    await stock(engine, admin, "Video", "v1@x.com:pw", "v2@x.com:pw")
    claimed = await engine.claim(user("U1"), "Video", guild)
    category_id = claimed.category_id
    window = guild.settings.cooldown_seconds

    clock.advance(seconds=window - 2)
    earlier = await engine.policy.remaining_cooldown("U1", category_id, guild)
    clock.advance(seconds=1)
    later = await engine.policy.remaining_cooldown("U1", category_id, guild)
    assert earlier > later > timedelta(0)

    clock.advance(seconds=1)
    assert await engine.policy.remaining_cooldown("U1", category_id, guild) == timedelta(0)
    assert not isinstance(await engine.claim(user("U1"), "Video", guild), CooldownActive)


@pytest.mark.asyncio
async def test_cooldown_is_per_category(engine, admin, guild):
    await stock(engine, admin, "A", "a@x.com:pw")
    await stock(engine, admin, "B", "b@x.com:pw")

    assert (await engine.claim(user("U1"), "A", guild)).email == "a@x.com"
    assert (await engine.claim(user("U1"), "B", guild)).email == "b@x.com"


@pytest.mark.asyncio
async def test_cooldown_is_per_scope(engine, admin, guild):
    await stock(engine, admin, "A", "a1@x.com:pw", "a2@x.com:pw")
    other_guild = await engine.resolve_scope("2002", "Other")

    assert (await engine.claim(user("U1"), "A", guild)).email == "a1@x.com"
    assert (await engine.claim(user("U1"), "A", other_guild)).email == "a2@x.com"


@pytest.mark.asyncio
async def test_claim_picks_oldest_first(engine, admin, guild, clock):
    await stock(engine, admin, "Games", "first@x.com:pw", "second@x.com:pw")
    clock.advance(minutes=5)
    await stock(engine, admin, "Games", "third@x.com:pw")

    emails = [(await engine.claim(user(f"U{i}"), "games", guild)).email for i in range(3)]
    assert emails == ["first@x.com", "second@x.com", "third@x.com"]


@pytest.mark.asyncio
async def test_expired_account_is_never_claimed(engine, admin, guild, clock):
    drafts = [AccountDraft("old@x.com", "pw", expires_at=clock.now + timedelta(hours=1))]
    assert isinstance(await engine.add(drafts, "Temp", admin, create_category=True), list)

    clock.advance(hours=2)
    assert await engine.claim(user("U1"), "Temp", guild) == StockExhausted("Temp")
    [count] = await engine.stock("Temp")
    assert (count.available, count.total) == (0, 1)


@pytest.mark.asyncio
async def test_bulk_add_is_all_or_nothing(engine, admin, store):
    await stock(engine, admin, "Bulk", "seed@x.com:pw")
    lines = [f"user{i}@x.com:pw{i}" for i in range(5)] + ["not-an-account"]

    result = await engine.add_from_text("\n".join(lines), "Bulk", admin)

    assert isinstance(result, ValidationError)
    assert result.line_number == 6
    [count] = await engine.stock("Bulk")
    assert count.total == 1


@pytest.mark.asyncio
async def test_add_validates_structured_drafts(engine, admin, clock):
    drafts = [
        AccountDraft("ok@x.com", "pw"),
        AccountDraft("ok2@x.com", ""),
    ]
    result = await engine.add(drafts, "Structured", admin, create_category=True)
    assert result == ValidationError(2, "missing password")

    past = [AccountDraft("late@x.com", "pw", expires_at=clock.now - timedelta(seconds=1))]
    assert isinstance(await engine.add(past, "Structured", admin, create_category=True), ValidationError)


@pytest.mark.asyncio
async def test_add_stores_trimmed_drafts(engine, admin):
    [account] = await engine.add([AccountDraft("  pad@x.com ", "pw")], "Padded", admin, create_category=True)

    assert account.email == "pad@x.com"
    assert await engine.remove("Padded", "pad@x.com", admin) is True


@pytest.mark.asyncio
async def test_add_to_unknown_category_without_create(engine, admin):
    result = await engine.add_from_text("a@x.com:pw", "Nowhere", admin)
    assert result == CategoryNotFound("Nowhere")


@pytest.mark.asyncio
async def test_unknown_category(engine, guild):
    assert await engine.claim(user("U1"), "missing", guild) == CategoryNotFound("missing")


@pytest.mark.asyncio
async def test_allowed_roles_gate_claims(engine, admin, guild):
    await stock(engine, admin, "VIP", "v1@x.com:pw", "v2@x.com:pw")
    updated = await engine.update_settings("1001", {"allowed_role_ids": ["555"]}, admin)
    scope = await engine.resolve_scope("1001")
    assert updated.allowed_role_ids == ["555"]

    assert isinstance(await engine.claim(user("U1"), "VIP", scope), PermissionDenied)
    assert (await engine.claim(user("U2", "555"), "VIP", scope)).email == "v1@x.com"


@pytest.mark.asyncio
async def test_blacklist_applies_everywhere(engine, admin, guild):
    await stock(engine, admin, "Svc", "s@x.com:pw")
    await engine.blacklist("U1", "abuse", admin, guild)
    dm = await engine.resolve_scope(None)

    assert await engine.claim(user("U1"), "Svc", guild) == PermissionDenied("blacklisted")
    assert await engine.claim(user("U1"), "Svc", dm) == PermissionDenied("blacklisted")

    assert await engine.unblacklist("U1", admin, guild) is True
    assert (await engine.claim(user("U1"), "Svc", guild)).email == "s@x.com"


@pytest.mark.asyncio
async def test_web_claim_requires_admin_and_skips_cooldown(engine, admin):
    await stock(engine, admin, "Web", "w1@x.com:pw", "w2@x.com:pw")

    assert isinstance(await engine.claim(user("U1"), "Web", None), PermissionDenied)
    assert (await engine.claim(admin, "Web", None)).email == "w1@x.com"
    assert (await engine.claim(admin, "Web", None)).email == "w2@x.com"


@pytest.mark.asyncio
async def test_admin_operations_require_admin(engine, admin, guild):
    [account] = await stock(engine, admin, "Svc", "s@x.com:pw")
    member = user("U1")

    assert isinstance(await engine.restock(account.id, member, guild), PermissionDenied)
    assert isinstance(await engine.add_from_text("n@x.com:pw", "Svc", member, guild), PermissionDenied)
    assert isinstance(await engine.remove("Svc", "s@x.com", member, guild), PermissionDenied)
    assert isinstance(await engine.blacklist("U2", "x", member, guild), PermissionDenied)


@pytest.mark.asyncio
async def test_remove_deletes_oldest_match(engine, admin, clock):
    await stock(engine, admin, "Dup", "d@x.com:one")
    clock.advance(seconds=10)
    await stock(engine, admin, "Dup", "d@x.com:two")

    assert await engine.remove("Dup", "d@x.com", admin) is True
    [remaining] = await engine.list_accounts()
    assert remaining.password == "two"
    assert await engine.remove("Dup", "nobody@x.com", admin) is False
    assert await engine.remove("Nope", "d@x.com", admin) == CategoryNotFound("Nope")


@pytest.mark.asyncio
async def test_update_account_keeps_status_invariant(engine, admin, guild):
    [account] = await stock(engine, admin, "Edit", "e@x.com:pw")
    await engine.claim(user("U1"), "Edit", guild)

    refused = await engine.update_account(account.id, {"status": "generated"}, admin)
    assert isinstance(refused, ValidationError)

    updated = await engine.update_account(account.id, {"status": "available", "password": "new"}, admin)
    assert updated.status == "available"
    assert updated.generated_by is None
    assert updated.generated_at is None
    assert updated.password == "new"

    assert isinstance(await engine.update_account(999, {"password": "x"}, admin), NotFoundError)


@pytest.mark.asyncio
async def test_set_cooldown_changes_window(engine, admin, guild):
    await stock(engine, admin, "Fast", "f1@x.com:pw", "f2@x.com:pw")
    settings = await engine.set_cooldown(1, admin, guild)
    assert settings.cooldown_seconds == 60

    scope = await engine.resolve_scope("1001")
    await engine.claim(user("U1"), "Fast", scope)
    blocked = await engine.claim(user("U1"), "Fast", scope)
    assert blocked.remaining_seconds == 60

    dm = await engine.resolve_scope(None)
    assert isinstance(await engine.set_cooldown(5, admin, dm), ValidationError)


@pytest.mark.asyncio
async def test_profile(engine, admin, guild):
    await stock(engine, admin, "P", "p@x.com:pw")
    await engine.claim(user("U1"), "P", guild)

    profile = await engine.profile(user("U1"), guild)
    assert profile.generated_count == 1
    assert profile.blacklisted is False
    assert profile.cooldowns["P"] == timedelta(seconds=3600)


@pytest.mark.asyncio
async def test_every_claim_restock_add_remove_logs_once(engine, admin, guild, store):
    """Each call appends exactly one entry whose type matches the outcome."""
    [account] = await stock(engine, admin, "Log", "l@x.com:pw")

    async def expect(call, log_type):
        before = await log_count(store)
        await call
        logs = await store.list_logs()
        assert len(logs) == before + 1
        assert logs[0].type == log_type.value

    await expect(engine.claim(user("U1"), "Log", guild), LogType.SUCCESS)
    await expect(engine.claim(user("U1"), "Log", guild), LogType.WARNING)  # cooldown
    await expect(engine.claim(user("U2"), "Log", guild), LogType.WARNING)  # exhausted
    await expect(engine.claim(user("U2"), "Missing", guild), LogType.WARNING)
    await expect(engine.restock(account.id, admin), LogType.INFO)
    await expect(engine.restock(424242, admin), LogType.WARNING)
    await expect(engine.add_from_text("n@x.com:pw", "Log", admin), LogType.SUCCESS)
    await expect(engine.add_from_text("broken", "Log", admin), LogType.WARNING)
    await expect(engine.remove("Log", "n@x.com", admin), LogType.INFO)
    await expect(engine.remove("Log", "n@x.com", admin), LogType.WARNING)


@pytest.mark.asyncio
async def test_recent_activity_newest_first(engine, admin, guild, clock):
    await stock(engine, admin, "Feed", "f@x.com:pw")
    clock.advance(seconds=1)
    await engine.claim(user("U1"), "Feed", guild)

    items = await engine.list_recent_activity(limit=2)
    assert [i.title for i in items] == ["ACCOUNT_GENERATED", "ACCOUNTS_ADDED"]
    assert items[0].type == "success"


@pytest.mark.asyncio
async def test_get_category_by_name_or_id(engine, admin):
    [account] = await stock(engine, admin, "Lookup", "l@x.com:pw")

    by_name = await engine.get_category("lookup")
    by_id = await engine.get_category(account.category_id)

    assert by_name.id == by_id.id == account.category_id
    assert await engine.get_category("nope") == CategoryNotFound("nope")


@pytest.mark.asyncio
async def test_purge_keeps_rows_inside_the_longest_window(engine, admin, guild, store, clock):
    [account] = await stock(engine, admin, "Sweep", "s@x.com:pw")
    await engine.claim(user("U1"), "Sweep", guild)
    await engine.update_settings("2002", {"cooldown_seconds": 7200}, admin)

    clock.advance(minutes=90)
    assert await engine.purge_stale_cooldowns() == 0

    clock.advance(minutes=60)
    assert await engine.purge_stale_cooldowns() == 1
    assert await store.get_last_claim("U1", account.category_id, guild.key) is None


# --- memory-only ---


class BrokenClaimStore(MemoryInventoryStore):
    async def claim_next_available(self, *args, **kwargs):
        raise StoreError("database is locked")


@pytest.mark.asyncio
async def test_storage_failure_is_returned_and_logged(clock):
    store = BrokenClaimStore()
    engine = AllocationEngine(store, clock=clock)
    admin = RequesterContext("admin", is_platform_admin=True)
    await stock(engine, admin, "Flaky", "f@x.com:pw")
    scope = await engine.resolve_scope("1001")
    before = await log_count(store)

    result = await engine.claim(user("U1"), "Flaky", scope)

    assert isinstance(result, StorageFailure)
    logs = await store.list_logs()
    assert len(logs) == before + 1
    assert logs[0].type == LogType.ERROR.value
    assert logs[0].action == "ACCOUNT_GENERATION_ERROR"


class BrokenLookupStore(MemoryInventoryStore):
    async def get_category_by_name(self, name):
        raise StoreError("connection reset")


@pytest.mark.asyncio
async def test_category_lookup_failure_is_returned_and_logged(clock):
    store = BrokenLookupStore()
    engine = AllocationEngine(store, clock=clock)

    result = await engine.get_category("Netflix")

    assert isinstance(result, StorageFailure)
    [entry] = await store.list_logs()
    assert entry.type == LogType.ERROR.value
    assert entry.action == "CATEGORY_GET_ERROR"
