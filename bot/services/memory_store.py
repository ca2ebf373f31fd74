"""In-memory inventory store. Process-local; used by tests and STORAGE_BACKEND=memory."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional, TypeVar

from sqlalchemy import inspect

from bot.models import (
    Account,
    AccountCategory,
    AccountStatus,
    BlacklistEntry,
    BotSettings,
    ClaimCooldown,
    LogEntry,
)
from bot.services.inventory_store import (
    AccountDraft,
    CooldownHit,
    DashboardStats,
    EDITABLE_ACCOUNT_FIELDS,
    InventoryStore,
    StockCount,
    StoreError,
)

T = TypeVar("T")


def _clone(obj: T) -> T:
    """Detached copy of a model instance so callers never mutate stored rows."""
    mapper = inspect(type(obj))
    return type(obj)(**{attr.key: getattr(obj, attr.key) for attr in mapper.column_attrs})


def _fifo_key(account: Account) -> tuple[datetime, int]:
    return (account.created_at, account.id)


class MemoryInventoryStore(InventoryStore):
    """Dict-backed store. A single lock serialises every mutation."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._categories: dict[int, AccountCategory] = {}
        self._accounts: dict[int, Account] = {}
        self._settings: dict[str, BotSettings] = {}
        self._cooldowns: dict[tuple[str, int, str], ClaimCooldown] = {}
        self._blacklist: dict[str, BlacklistEntry] = {}
        self._logs: list[LogEntry] = []
        self._ids: dict[str, int] = {}

    def _next_id(self, table: str) -> int:
        self._ids[table] = self._ids.get(table, 0) + 1
        return self._ids[table]

    # --- Categories ---

    async def get_category(self, category_id: int) -> Optional[AccountCategory]:
        category = self._categories.get(category_id)
        return _clone(category) if category else None

    async def get_category_by_name(self, name: str) -> Optional[AccountCategory]:
        wanted = name.strip().lower()
        for category in self._categories.values():
            if category.name.lower() == wanted:
                return _clone(category)
        return None

    async def list_categories(self) -> list[AccountCategory]:
        return [_clone(c) for c in sorted(self._categories.values(), key=lambda c: c.name.lower())]

    async def create_category(self, name: str, description: Optional[str], now: datetime) -> AccountCategory:
        async with self._lock:
            if any(c.name.lower() == name.lower() for c in self._categories.values()):
                raise StoreError(f"Category {name!r} already exists")
            category = AccountCategory(
                id=self._next_id("account_categories"),
                name=name,
                description=description,
                created_at=now,
            )
            self._categories[category.id] = category
            return _clone(category)

    async def update_category_description(
        self, category_id: int, description: Optional[str]
    ) -> Optional[AccountCategory]:
        async with self._lock:
            category = self._categories.get(category_id)
            if not category:
                return None
            category.description = description
            return _clone(category)

    # --- Accounts ---

    async def get_account(self, account_id: int) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return _clone(account) if account else None

    async def list_accounts(
        self,
        now: datetime,
        category_id: Optional[int] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[Account]:
        result = []
        needle = search.lower() if search else None
        for account in sorted(self._accounts.values(), key=_fifo_key):
            if category_id is not None and account.category_id != category_id:
                continue
            if status and status != "all" and account.effective_status(now) != status:
                continue
            if needle and needle not in account.email.lower():
                continue
            result.append(_clone(account))
        return result

    async def add_accounts(self, category_id: int, drafts: list[AccountDraft], now: datetime) -> list[Account]:
        async with self._lock:
            created = []
            for draft in drafts:
                account = Account(
                    id=self._next_id("accounts"),
                    email=draft.email,
                    password=draft.password,
                    category_id=category_id,
                    status=AccountStatus.AVAILABLE.value,
                    expires_at=draft.expires_at,
                    generated_by=None,
                    generated_at=None,
                    created_at=now,
                    updated_at=now,
                )
                created.append(account)
            for account in created:
                self._accounts[account.id] = account
            return [_clone(a) for a in created]

    async def claim_next_available(
        self,
        category_id: int,
        requester_id: str,
        scope_id: Optional[str],
        now: datetime,
        cooldown_seconds: int = 0,
    ) -> Account | CooldownHit | None:
        async with self._lock:
            if scope_id is not None:
                row = self._cooldowns.get((requester_id, category_id, scope_id))
                if row and now - row.last_claimed_at < timedelta(seconds=cooldown_seconds):
                    return CooldownHit(row.last_claimed_at)
            candidates = [
                a for a in self._accounts.values()
                if a.category_id == category_id and a.is_claimable(now)
            ]
            if not candidates:
                return None
            account = min(candidates, key=_fifo_key)
            account.mark_generated(requester_id, now)
            if scope_id is not None:
                self._touch_cooldown(requester_id, category_id, scope_id, now)
            return _clone(account)

    def _touch_cooldown(self, requester_id: str, category_id: int, scope_id: str, now: datetime) -> None:
        key = (requester_id, category_id, scope_id)
        row = self._cooldowns.get(key)
        if row:
            row.last_claimed_at = now
        else:
            self._cooldowns[key] = ClaimCooldown(
                id=self._next_id("claim_cooldowns"),
                requester_id=requester_id,
                category_id=category_id,
                scope_id=scope_id,
                last_claimed_at=now,
            )

    async def release_account(self, account_id: int, now: datetime) -> tuple[Optional[Account], bool]:
        async with self._lock:
            account = self._accounts.get(account_id)
            if not account:
                return None, False
            if account.status != AccountStatus.GENERATED.value:
                return _clone(account), False
            account.mark_available(now)
            return _clone(account), True

    async def restock_account(self, account_id: int, now: datetime) -> Optional[Account]:
        async with self._lock:
            account = self._accounts.get(account_id)
            if not account:
                return None
            account.mark_available(now)
            return _clone(account)

    async def update_account(self, account_id: int, changes: dict[str, Any], now: datetime) -> Optional[Account]:
        async with self._lock:
            account = self._accounts.get(account_id)
            if not account:
                return None
            for key, value in changes.items():
                if key in EDITABLE_ACCOUNT_FIELDS:
                    setattr(account, key, value)
            if changes.get("status") == AccountStatus.AVAILABLE.value:
                account.mark_available(now)
            account.updated_at = now
            return _clone(account)

    async def delete_account(self, account_id: int) -> Optional[Account]:
        async with self._lock:
            account = self._accounts.pop(account_id, None)
            return _clone(account) if account else None

    async def remove_account_by_email(self, category_id: int, email: str) -> Optional[Account]:
        async with self._lock:
            matches = [
                a for a in self._accounts.values()
                if a.category_id == category_id and a.email == email
            ]
            if not matches:
                return None
            account = min(matches, key=_fifo_key)
            del self._accounts[account.id]
            return _clone(account)

    async def stock_counts(self, now: datetime, category_id: Optional[int] = None) -> list[StockCount]:
        counts = []
        for category in sorted(self._categories.values(), key=lambda c: c.name.lower()):
            if category_id is not None and category.id != category_id:
                continue
            accounts = [a for a in self._accounts.values() if a.category_id == category.id]
            available = sum(1 for a in accounts if a.is_claimable(now))
            counts.append(StockCount(category.id, category.name, available, len(accounts)))
        return counts

    async def count_generated_by(self, requester_id: str) -> int:
        return sum(
            1 for a in self._accounts.values()
            if a.generated_by == requester_id and a.status == AccountStatus.GENERATED.value
        )

    async def dashboard_stats(self, now: datetime, day_start: datetime) -> DashboardStats:
        stats = DashboardStats(connected_servers=len(self._settings))
        names = {c.id: c.name for c in self._categories.values()}
        for account in self._accounts.values():
            stats.total_accounts += 1
            if account.is_claimable(now):
                stats.available_accounts += 1
            if account.generated_at is not None:
                if account.generated_at >= day_start:
                    stats.generated_today += 1
                if stats.last_generation is None or account.generated_at > stats.last_generation:
                    stats.last_generation = account.generated_at
            name = names.get(account.category_id)
            if name:
                stats.category_counts[name] = stats.category_counts.get(name, 0) + 1
        return stats

    # --- Cooldowns ---

    async def get_last_claim(self, requester_id: str, category_id: int, scope_id: str) -> Optional[datetime]:
        row = self._cooldowns.get((requester_id, category_id, scope_id))
        return row.last_claimed_at if row else None

    async def list_last_claims(self, requester_id: str, scope_id: str) -> list[ClaimCooldown]:
        return [
            _clone(row) for (req, _, scope), row in self._cooldowns.items()
            if req == requester_id and scope == scope_id
        ]

    async def purge_cooldowns(self, before: datetime) -> int:
        async with self._lock:
            stale = [key for key, row in self._cooldowns.items() if row.last_claimed_at < before]
            for key in stale:
                del self._cooldowns[key]
            return len(stale)

    # --- Guild settings ---

    async def get_bot_settings(self, guild_id: str) -> Optional[BotSettings]:
        settings = self._settings.get(guild_id)
        return _clone(settings) if settings else None

    async def get_or_create_bot_settings(
        self, guild_id: str, prefix: str, cooldown_seconds: int, now: datetime
    ) -> BotSettings:
        async with self._lock:
            settings = self._settings.get(guild_id)
            if not settings:
                settings = BotSettings(
                    id=self._next_id("bot_settings"),
                    guild_id=guild_id,
                    prefix=prefix,
                    allowed_role_ids=[],
                    admin_role_ids=[],
                    cooldown_seconds=cooldown_seconds,
                    created_at=now,
                    updated_at=now,
                )
                self._settings[guild_id] = settings
            return _clone(settings)

    async def update_bot_settings(self, guild_id: str, changes: dict[str, Any], now: datetime) -> Optional[BotSettings]:
        async with self._lock:
            settings = self._settings.get(guild_id)
            if not settings:
                return None
            for key, value in changes.items():
                setattr(settings, key, list(value) if isinstance(value, (list, tuple, set)) else value)
            settings.updated_at = now
            return _clone(settings)

    async def count_bot_settings(self) -> int:
        return len(self._settings)

    async def max_cooldown_seconds(self) -> int:
        return max((s.cooldown_seconds for s in self._settings.values()), default=0)

    # --- Blacklist ---

    async def add_blacklist(
        self, requester_id: str, reason: Optional[str], created_by: str, scope_id: Optional[str], now: datetime
    ) -> BlacklistEntry:
        async with self._lock:
            entry = self._blacklist.get(requester_id)
            if entry:
                entry.reason = reason
                entry.created_by = created_by
            else:
                entry = BlacklistEntry(
                    id=self._next_id("blacklist_entries"),
                    requester_id=requester_id,
                    scope_id=scope_id,
                    reason=reason,
                    created_by=created_by,
                    created_at=now,
                )
                self._blacklist[requester_id] = entry
            return _clone(entry)

    async def remove_blacklist(self, requester_id: str) -> bool:
        async with self._lock:
            return self._blacklist.pop(requester_id, None) is not None

    async def is_blacklisted(self, requester_id: str) -> bool:
        return requester_id in self._blacklist

    # --- Logs ---

    async def append_log(
        self,
        type: str,
        action: str,
        message: str,
        now: datetime,
        user_id: Optional[int] = None,
        metadata: Optional[str] = None,
    ) -> LogEntry:
        async with self._lock:
            entry = LogEntry(
                id=self._next_id("logs"),
                type=type,
                action=action,
                message=message,
                metadata_json=metadata,
                user_id=user_id,
                created_at=now,
            )
            self._logs.append(entry)
            return _clone(entry)

    async def list_logs(self, limit: Optional[int] = None) -> list[LogEntry]:
        newest = [_clone(e) for e in reversed(self._logs)]
        if limit and limit > 0:
            return newest[:limit]
        return newest
