"""Cooldown and permission policy.

Permission model (per guild BotSettings):

- user level: open to everyone unless allowed_role_ids is set, in which case the
  requester needs one of those roles or admin level.
- admin level: a role in admin_role_ids, or the platform Administrator permission.
  With no admin roles configured only platform administrators qualify. Outside a
  guild (DMs) admin level falls back to the configured owner id.

This open-for-users / restricted-for-admins asymmetry is intentional.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import config
from bot.models import BotSettings
from bot.services.context import DM_SCOPE, PermissionLevel, RequesterContext, ScopeContext
from bot.services.inventory_store import InventoryStore

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def default_settings(guild_id: str = DM_SCOPE) -> BotSettings:
    """Transient settings used where no guild row exists (DMs)."""
    return BotSettings(
        guild_id=guild_id,
        prefix=config.DEFAULT_PREFIX,
        allowed_role_ids=[],
        admin_role_ids=[],
        cooldown_seconds=config.DEFAULT_COOLDOWN_SECONDS,
    )


def is_allowed(
    requester: RequesterContext,
    scope: Optional[ScopeContext],
    level: PermissionLevel,
    owner_id: str = "",
) -> bool:
    """Pure permission check. scope None (or a DM scope) means outside any guild."""
    if scope is None or not scope.in_guild:
        if level == PermissionLevel.USER:
            return True
        if owner_id and requester.identity == owner_id:
            return True
        # Web operators carry the dashboard admin flag; Discord DMs never do
        return scope is None and requester.is_platform_admin

    settings = scope.settings
    if level == PermissionLevel.ADMIN:
        if requester.is_platform_admin:
            return True
        admin_roles = set(settings.admin_role_ids or [])
        return bool(admin_roles & requester.role_ids)

    allowed_roles = set(settings.allowed_role_ids or [])
    if not allowed_roles:
        return True
    if allowed_roles & requester.role_ids:
        return True
    return is_allowed(requester, scope, PermissionLevel.ADMIN, owner_id)


class AccessPolicy:
    """Permission checks plus store-backed cooldown and scope lookups."""

    def __init__(self, store: InventoryStore, clock: Clock = utcnow, owner_id: Optional[str] = None):
        self._store = store
        self._clock = clock
        self.owner_id = config.DISCORD_OWNER_ID if owner_id is None else owner_id

    def is_allowed(
        self,
        requester: RequesterContext,
        scope: Optional[ScopeContext],
        level: PermissionLevel,
    ) -> bool:
        return is_allowed(requester, scope, level, self.owner_id)

    async def resolve_scope(self, guild_id: Optional[str], guild_name: str = "") -> ScopeContext:
        """Settings for a guild, created with defaults on first sight. None -> DM scope."""
        if guild_id is None:
            return ScopeContext(guild_id=None, settings=default_settings(), guild_name="Direct Messages")
        settings = await self._store.get_or_create_bot_settings(
            guild_id,
            prefix=config.DEFAULT_PREFIX,
            cooldown_seconds=config.DEFAULT_COOLDOWN_SECONDS,
            now=self._clock(),
        )
        return ScopeContext(guild_id=guild_id, settings=settings, guild_name=guild_name)

    async def remaining_cooldown(self, requester_id: str, category_id: int, scope: ScopeContext) -> timedelta:
        """max(0, cooldown - (now - last claim)). Zero when never claimed."""
        last = await self._store.get_last_claim(requester_id, category_id, scope.key)
        if last is None:
            return timedelta(0)
        window = timedelta(seconds=scope.settings.cooldown_seconds)
        remaining = window - (self._clock() - last)
        return max(timedelta(0), remaining)

    async def cooldowns_for(self, requester_id: str, scope: ScopeContext) -> dict[int, timedelta]:
        """Remaining cooldown per category id, only for categories still cooling down."""
        window = timedelta(seconds=scope.settings.cooldown_seconds)
        now = self._clock()
        result = {}
        for row in await self._store.list_last_claims(requester_id, scope.key):
            remaining = window - (now - row.last_claimed_at)
            if remaining > timedelta(0):
                result[row.category_id] = remaining
        return result
