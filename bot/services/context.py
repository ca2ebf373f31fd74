"""Caller context passed explicitly into every engine call (no ambient session state)."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field

from bot.models import BotSettings

DM_SCOPE = "dm"


class PermissionLevel(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class RequesterContext:
    """Who is asking.

    identity: stable id (Discord user id, or "web:<username>" for dashboard operators).
    is_platform_admin: Discord Administrator permission, or the dashboard admin flag.
    user_id: dashboard users.id, for log attribution.
    """

    identity: str
    display_name: str = ""
    role_ids: frozenset[str] = field(default_factory=frozenset)
    is_platform_admin: bool = False
    user_id: int | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.identity


@dataclass(frozen=True)
class ScopeContext:
    """Guild the request came from. guild_id None means direct messages."""

    guild_id: str | None
    settings: BotSettings
    guild_name: str = ""

    @property
    def key(self) -> str:
        """Cooldown/blacklist key for this scope."""
        return self.guild_id or DM_SCOPE

    @property
    def in_guild(self) -> bool:
        return self.guild_id is not None
