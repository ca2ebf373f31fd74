"""Permission and cooldown policy tests."""
from datetime import timedelta

import pytest

from bot.models import BotSettings
from bot.services.context import PermissionLevel, RequesterContext, ScopeContext
from bot.services.policy import AccessPolicy, default_settings, is_allowed

USER = PermissionLevel.USER
ADMIN = PermissionLevel.ADMIN


def guild_scope(allowed=(), admin=()) -> ScopeContext:
    settings = BotSettings(
        guild_id="1001",
        prefix="!",
        allowed_role_ids=list(allowed),
        admin_role_ids=list(admin),
        cooldown_seconds=3600,
    )
    return ScopeContext(guild_id="1001", settings=settings)


def member(*roles, platform_admin=False, identity="U1") -> RequesterContext:
    return RequesterContext(identity=identity, role_ids=frozenset(roles), is_platform_admin=platform_admin)


def test_no_roles_configured_user_level_open():
    scope = guild_scope()
    assert is_allowed(member(), scope, USER)
    assert is_allowed(member("42"), scope, USER)


def test_no_roles_configured_admin_level_platform_admin_only():
    scope = guild_scope()
    assert not is_allowed(member(), scope, ADMIN)
    assert not is_allowed(member("42"), scope, ADMIN)
    assert is_allowed(member(platform_admin=True), scope, ADMIN)


def test_allowed_roles_restrict_user_level():
    scope = guild_scope(allowed=["10"], admin=["20"])
    assert not is_allowed(member(), scope, USER)
    assert is_allowed(member("10"), scope, USER)
    # Admins pass user-level checks without the allowed role
    assert is_allowed(member("20"), scope, USER)
    assert is_allowed(member(platform_admin=True), scope, USER)


def test_admin_roles_grant_admin_level():
    scope = guild_scope(admin=["20"])
    assert is_allowed(member("20"), scope, ADMIN)
    assert not is_allowed(member("10"), scope, ADMIN)


def test_direct_messages():
    dm = ScopeContext(guild_id=None, settings=default_settings())
    assert is_allowed(member(), dm, USER)
    assert not is_allowed(member(platform_admin=True), dm, ADMIN)
    assert is_allowed(member(identity="owner"), dm, ADMIN, owner_id="owner")
    assert not is_allowed(member(identity="owner"), dm, ADMIN, owner_id="")


def test_web_operator_without_scope():
    assert is_allowed(member(platform_admin=True), None, ADMIN)
    assert not is_allowed(member(), None, ADMIN)


@pytest.mark.asyncio
async def test_remaining_cooldown_zero_without_claims(store, clock):
    policy = AccessPolicy(store, clock=clock, owner_id="")
    scope = await policy.resolve_scope("1001")
    assert await policy.remaining_cooldown("U1", 1, scope) == timedelta(0)
    assert await policy.cooldowns_for("U1", scope) == {}


@pytest.mark.asyncio
async def test_resolve_scope_creates_settings_once(store, clock):
    policy = AccessPolicy(store, clock=clock, owner_id="")
    first = await policy.resolve_scope("1001", "Guild")
    second = await policy.resolve_scope("1001")

    assert first.key == second.key == "1001"
    assert first.settings.cooldown_seconds == 3600
    assert await store.count_bot_settings() == 1

    dm = await policy.resolve_scope(None)
    assert dm.key == "dm"
    assert not dm.in_guild
    assert await store.count_bot_settings() == 1
