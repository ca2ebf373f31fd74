"""Inventory store interface shared by the SQL and in-memory backends."""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from bot.models import (
    Account,
    AccountCategory,
    BlacklistEntry,
    BotSettings,
    ClaimCooldown,
    LogEntry,
)


class StoreError(Exception):
    """Unexpected storage failure (connection loss, constraint violation, ...)."""


@dataclass(frozen=True)
class AccountDraft:
    """Validated input for a new account."""

    email: str
    password: str
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class CooldownHit:
    """Claim refused: the requester's last claim here is still inside the window."""

    last_claimed_at: datetime


@dataclass(frozen=True)
class StockCount:
    category_id: int
    name: str
    available: int
    total: int


@dataclass
class DashboardStats:
    total_accounts: int = 0
    available_accounts: int = 0
    generated_today: int = 0
    category_counts: dict[str, int] = field(default_factory=dict)
    connected_servers: int = 0
    last_generation: Optional[datetime] = None


# Fields an operator may change on an existing account
EDITABLE_ACCOUNT_FIELDS = ("email", "password", "status", "expires_at")


class InventoryStore(abc.ABC):
    """Durable state for accounts, categories, guild settings, cooldowns and logs.

    Every method is a unit of work: it commits before returning or raises StoreError.
    Timestamps are naive UTC and always supplied by the caller.
    """

    # --- Categories ---

    @abc.abstractmethod
    async def get_category(self, category_id: int) -> Optional[AccountCategory]: ...

    @abc.abstractmethod
    async def get_category_by_name(self, name: str) -> Optional[AccountCategory]:
        """Case-insensitive lookup."""

    @abc.abstractmethod
    async def list_categories(self) -> list[AccountCategory]: ...

    @abc.abstractmethod
    async def create_category(self, name: str, description: Optional[str], now: datetime) -> AccountCategory: ...

    @abc.abstractmethod
    async def update_category_description(
        self, category_id: int, description: Optional[str]
    ) -> Optional[AccountCategory]: ...

    # --- Accounts ---

    @abc.abstractmethod
    async def get_account(self, account_id: int) -> Optional[Account]: ...

    @abc.abstractmethod
    async def list_accounts(
        self,
        now: datetime,
        category_id: Optional[int] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[Account]:
        """Filter by effective status (expired accounts never match "available")."""

    @abc.abstractmethod
    async def add_accounts(self, category_id: int, drafts: list[AccountDraft], now: datetime) -> list[Account]:
        """Insert all drafts or none."""

    @abc.abstractmethod
    async def claim_next_available(
        self,
        category_id: int,
        requester_id: str,
        scope_id: Optional[str],
        now: datetime,
        cooldown_seconds: int = 0,
    ) -> Account | CooldownHit | None:
        """Atomically mark the oldest claimable account generated and return it.

        When scope_id is given, the (requester, category, scope) cooldown row is checked
        and stamped in the same unit of work as the claim; a claim inside the last
        `cooldown_seconds` returns CooldownHit and changes nothing. Returns None when
        nothing is claimable.
        """

    @abc.abstractmethod
    async def release_account(self, account_id: int, now: datetime) -> tuple[Optional[Account], bool]:
        """Revert generated -> available. Returns (account, changed); account None if missing."""

    @abc.abstractmethod
    async def restock_account(self, account_id: int, now: datetime) -> Optional[Account]:
        """Unconditionally set available and clear generation fields."""

    @abc.abstractmethod
    async def update_account(self, account_id: int, changes: dict[str, Any], now: datetime) -> Optional[Account]: ...

    @abc.abstractmethod
    async def delete_account(self, account_id: int) -> Optional[Account]: ...

    @abc.abstractmethod
    async def remove_account_by_email(self, category_id: int, email: str) -> Optional[Account]:
        """Delete the oldest account in the category with this email."""

    @abc.abstractmethod
    async def stock_counts(self, now: datetime, category_id: Optional[int] = None) -> list[StockCount]: ...

    @abc.abstractmethod
    async def count_generated_by(self, requester_id: str) -> int: ...

    @abc.abstractmethod
    async def dashboard_stats(self, now: datetime, day_start: datetime) -> DashboardStats: ...

    # --- Cooldowns ---

    @abc.abstractmethod
    async def get_last_claim(self, requester_id: str, category_id: int, scope_id: str) -> Optional[datetime]: ...

    @abc.abstractmethod
    async def list_last_claims(self, requester_id: str, scope_id: str) -> list[ClaimCooldown]: ...

    @abc.abstractmethod
    async def purge_cooldowns(self, before: datetime) -> int:
        """Drop cooldown rows last touched before `before`. Returns rows removed."""

    # --- Guild settings ---

    @abc.abstractmethod
    async def get_bot_settings(self, guild_id: str) -> Optional[BotSettings]: ...

    @abc.abstractmethod
    async def get_or_create_bot_settings(
        self, guild_id: str, prefix: str, cooldown_seconds: int, now: datetime
    ) -> BotSettings: ...

    @abc.abstractmethod
    async def update_bot_settings(self, guild_id: str, changes: dict[str, Any], now: datetime) -> Optional[BotSettings]: ...

    @abc.abstractmethod
    async def count_bot_settings(self) -> int: ...

    @abc.abstractmethod
    async def max_cooldown_seconds(self) -> int:
        """Longest cooldown configured in any guild, 0 when none is stored."""

    # --- Blacklist ---

    @abc.abstractmethod
    async def add_blacklist(
        self, requester_id: str, reason: Optional[str], created_by: str, scope_id: Optional[str], now: datetime
    ) -> BlacklistEntry:
        """Insert, or update the reason of an existing entry."""

    @abc.abstractmethod
    async def remove_blacklist(self, requester_id: str) -> bool: ...

    @abc.abstractmethod
    async def is_blacklisted(self, requester_id: str) -> bool: ...

    # --- Logs ---

    @abc.abstractmethod
    async def append_log(
        self,
        type: str,
        action: str,
        message: str,
        now: datetime,
        user_id: Optional[int] = None,
        metadata: Optional[str] = None,
    ) -> LogEntry: ...

    @abc.abstractmethod
    async def list_logs(self, limit: Optional[int] = None) -> list[LogEntry]:
        """Newest first."""


def create_store(backend: Optional[str] = None) -> InventoryStore:
    """Build the store selected by STORAGE_BACKEND."""
    import config

    backend = (backend or config.STORAGE_BACKEND).lower()
    if backend == "memory":
        from bot.services.memory_store import MemoryInventoryStore

        return MemoryInventoryStore()
    if backend == "sql":
        from bot.models.base import async_session_factory
        from bot.services.sql_store import SqlInventoryStore

        return SqlInventoryStore(async_session_factory)
    raise ValueError(f"Unknown STORAGE_BACKEND: {backend!r} (expected 'sql' or 'memory')")
