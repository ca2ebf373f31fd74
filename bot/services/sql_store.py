"""SQLAlchemy inventory store (production backend)."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Optional

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

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

logger = logging.getLogger("stockroom.store")

AVAILABLE = AccountStatus.AVAILABLE.value
GENERATED = AccountStatus.GENERATED.value
EXPIRED = AccountStatus.EXPIRED.value


def _not_expired(model, now: datetime):
    return or_(model.expires_at.is_(None), model.expires_at > now)


def _claimable(model, now: datetime):
    return and_(model.status == AVAILABLE, _not_expired(model, now))


def _status_filter(status: str, now: datetime):
    """SQL twin of Account.effective_status(now) == status."""
    if status == EXPIRED:
        return or_(Account.status == EXPIRED, Account.expires_at <= now)
    return and_(Account.status == status, _not_expired(Account, now))


class SqlInventoryStore(InventoryStore):
    """Store backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    # --- Categories ---

    async def get_category(self, category_id: int) -> Optional[AccountCategory]:
        async with self._session() as session:
            return await session.get(AccountCategory, category_id)

    async def get_category_by_name(self, name: str) -> Optional[AccountCategory]:
        async with self._session() as session:
            result = await session.execute(
                select(AccountCategory).where(func.lower(AccountCategory.name) == name.strip().lower())
            )
            return result.scalar_one_or_none()

    async def list_categories(self) -> list[AccountCategory]:
        async with self._session() as session:
            result = await session.execute(select(AccountCategory).order_by(func.lower(AccountCategory.name)))
            return list(result.scalars().all())

    async def create_category(self, name: str, description: Optional[str], now: datetime) -> AccountCategory:
        async with self._session() as session:
            category = AccountCategory(name=name, description=description, created_at=now)
            session.add(category)
            await session.commit()
            return category

    async def update_category_description(
        self, category_id: int, description: Optional[str]
    ) -> Optional[AccountCategory]:
        async with self._session() as session:
            category = await session.get(AccountCategory, category_id)
            if not category:
                return None
            category.description = description
            await session.commit()
            return category

    # --- Accounts ---

    async def get_account(self, account_id: int) -> Optional[Account]:
        async with self._session() as session:
            return await session.get(Account, account_id)

    async def list_accounts(
        self,
        now: datetime,
        category_id: Optional[int] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[Account]:
        query = select(Account)
        if category_id is not None:
            query = query.where(Account.category_id == category_id)
        if status and status != "all":
            query = query.where(_status_filter(status, now))
        if search:
            query = query.where(func.lower(Account.email).contains(search.lower(), autoescape=True))
        query = query.order_by(Account.created_at, Account.id)
        async with self._session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def add_accounts(self, category_id: int, drafts: list[AccountDraft], now: datetime) -> list[Account]:
        accounts = [
            Account(
                email=d.email,
                password=d.password,
                category_id=category_id,
                status=AVAILABLE,
                expires_at=d.expires_at,
                created_at=now,
                updated_at=now,
            )
            for d in drafts
        ]
        async with self._session() as session:
            session.add_all(accounts)
            await session.commit()  # Single transaction: all rows or none
            return accounts

    async def claim_next_available(
        self,
        category_id: int,
        requester_id: str,
        scope_id: Optional[str],
        now: datetime,
        cooldown_seconds: int = 0,
    ) -> Account | CooldownHit | None:
        attempt = 0
        while True:
            attempt += 1
            async with self._session() as session:
                # Cooldown row is written first; claims by one requester serialize on it
                if scope_id is not None:
                    blocked_since = await self._stamp_cooldown(
                        session, requester_id, category_id, scope_id, now, cooldown_seconds
                    )
                    if blocked_since is not None:
                        return CooldownHit(blocked_since)
                claimed_id = await self._claim_oldest(session, category_id, requester_id, now)
                if claimed_id is not None:
                    await session.commit()
                    return await session.get(Account, claimed_id)
                await session.rollback()
                left = await session.scalar(
                    select(func.count(Account.id)).where(Account.category_id == category_id, _claimable(Account, now))
                )
                if not left:
                    return None
                # Lost the row to a committed claim
                logger.info("Claim race on category %s (attempt %d, %d left), retrying", category_id, attempt, left)

    async def _claim_oldest(
        self, session: AsyncSession, category_id: int, requester_id: str, now: datetime
    ) -> Optional[int]:
        """Conditional update of the oldest claimable row. None when another claimer got there first."""
        candidate = aliased(Account)
        oldest = (
            select(candidate.id)
            .where(candidate.category_id == category_id, _claimable(candidate, now))
            .order_by(candidate.created_at, candidate.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        result = await session.execute(
            update(Account)
            .where(Account.id == oldest, Account.status == AVAILABLE)
            .values(status=GENERATED, generated_by=requester_id, generated_at=now, updated_at=now)
            .returning(Account.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def _stamp_cooldown(
        self,
        session: AsyncSession,
        requester_id: str,
        category_id: int,
        scope_id: str,
        now: datetime,
        cooldown_seconds: int,
    ) -> Optional[datetime]:
        """Move the cooldown row to `now` if its window has passed.

        Returns the blocking last claim time (after rolling back) when it has not.
        """
        key = (
            ClaimCooldown.requester_id == requester_id,
            ClaimCooldown.category_id == category_id,
            ClaimCooldown.scope_id == scope_id,
        )
        cutoff = now - timedelta(seconds=cooldown_seconds)
        stamped = await session.execute(
            update(ClaimCooldown)
            .where(*key, ClaimCooldown.last_claimed_at <= cutoff)
            .values(last_claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if stamped.rowcount:
            return None
        try:
            await session.execute(
                insert(ClaimCooldown).values(
                    requester_id=requester_id,
                    category_id=category_id,
                    scope_id=scope_id,
                    last_claimed_at=now,
                )
            )
        except IntegrityError:
            # Row exists and is still inside the window
            await session.rollback()
            last = await session.scalar(select(ClaimCooldown.last_claimed_at).where(*key))
            return last if last is not None else now
        return None

    async def release_account(self, account_id: int, now: datetime) -> tuple[Optional[Account], bool]:
        async with self._session() as session:
            result = await session.execute(
                update(Account)
                .where(Account.id == account_id, Account.status == GENERATED)
                .values(status=AVAILABLE, generated_by=None, generated_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount == 1
            await session.commit()
            account = await session.get(Account, account_id)
            return account, changed

    async def restock_account(self, account_id: int, now: datetime) -> Optional[Account]:
        async with self._session() as session:
            account = await session.get(Account, account_id)
            if not account:
                return None
            account.mark_available(now)
            await session.commit()
            return account

    async def update_account(self, account_id: int, changes: dict[str, Any], now: datetime) -> Optional[Account]:
        async with self._session() as session:
            account = await session.get(Account, account_id)
            if not account:
                return None
            for key, value in changes.items():
                if key in EDITABLE_ACCOUNT_FIELDS:
                    setattr(account, key, value)
            if changes.get("status") == AVAILABLE:
                account.mark_available(now)
            account.updated_at = now
            await session.commit()
            return account

    async def delete_account(self, account_id: int) -> Optional[Account]:
        async with self._session() as session:
            account = await session.get(Account, account_id)
            if not account:
                return None
            await session.delete(account)
            await session.commit()
            return account

    async def remove_account_by_email(self, category_id: int, email: str) -> Optional[Account]:
        async with self._session() as session:
            result = await session.execute(
                select(Account)
                .where(Account.category_id == category_id, Account.email == email)
                .order_by(Account.created_at, Account.id)
                .limit(1)
            )
            account = result.scalar_one_or_none()
            if not account:
                return None
            await session.delete(account)
            await session.commit()
            return account

    async def stock_counts(self, now: datetime, category_id: Optional[int] = None) -> list[StockCount]:
        available = func.count(Account.id).filter(_claimable(Account, now))
        query = (
            select(AccountCategory.id, AccountCategory.name, available, func.count(Account.id))
            .outerjoin(Account, Account.category_id == AccountCategory.id)
            .group_by(AccountCategory.id, AccountCategory.name)
            .order_by(func.lower(AccountCategory.name))
        )
        if category_id is not None:
            query = query.where(AccountCategory.id == category_id)
        async with self._session() as session:
            result = await session.execute(query)
            return [StockCount(cid, name, avail or 0, total or 0) for cid, name, avail, total in result.all()]

    async def count_generated_by(self, requester_id: str) -> int:
        async with self._session() as session:
            count = await session.scalar(
                select(func.count(Account.id)).where(
                    Account.generated_by == requester_id, Account.status == GENERATED
                )
            )
            return count or 0

    async def dashboard_stats(self, now: datetime, day_start: datetime) -> DashboardStats:
        async with self._session() as session:
            total = await session.scalar(select(func.count(Account.id)))
            available = await session.scalar(select(func.count(Account.id)).where(_claimable(Account, now)))
            today = await session.scalar(
                select(func.count(Account.id)).where(
                    Account.generated_at.is_not(None), Account.generated_at >= day_start
                )
            )
            last = await session.scalar(select(func.max(Account.generated_at)))
            per_category = await session.execute(
                select(AccountCategory.name, func.count(Account.id))
                .join(Account, Account.category_id == AccountCategory.id)
                .group_by(AccountCategory.name)
            )
            servers = await session.scalar(select(func.count(BotSettings.id)))
            return DashboardStats(
                total_accounts=total or 0,
                available_accounts=available or 0,
                generated_today=today or 0,
                category_counts={name: count for name, count in per_category.all()},
                connected_servers=servers or 0,
                last_generation=last,
            )

    # --- Cooldowns ---

    async def get_last_claim(self, requester_id: str, category_id: int, scope_id: str) -> Optional[datetime]:
        async with self._session() as session:
            return await session.scalar(
                select(ClaimCooldown.last_claimed_at).where(
                    ClaimCooldown.requester_id == requester_id,
                    ClaimCooldown.category_id == category_id,
                    ClaimCooldown.scope_id == scope_id,
                )
            )

    async def list_last_claims(self, requester_id: str, scope_id: str) -> list[ClaimCooldown]:
        async with self._session() as session:
            result = await session.execute(
                select(ClaimCooldown).where(
                    ClaimCooldown.requester_id == requester_id,
                    ClaimCooldown.scope_id == scope_id,
                )
            )
            return list(result.scalars().all())

    async def purge_cooldowns(self, before: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(ClaimCooldown).where(ClaimCooldown.last_claimed_at < before)
            )
            await session.commit()
            return result.rowcount or 0

    # --- Guild settings ---

    async def get_bot_settings(self, guild_id: str) -> Optional[BotSettings]:
        async with self._session() as session:
            result = await session.execute(select(BotSettings).where(BotSettings.guild_id == guild_id))
            return result.scalar_one_or_none()

    async def get_or_create_bot_settings(
        self, guild_id: str, prefix: str, cooldown_seconds: int, now: datetime
    ) -> BotSettings:
        async with self._session() as session:
            result = await session.execute(select(BotSettings).where(BotSettings.guild_id == guild_id))
            settings = result.scalar_one_or_none()
            if settings:
                return settings
            settings = BotSettings(
                guild_id=guild_id,
                prefix=prefix,
                allowed_role_ids=[],
                admin_role_ids=[],
                cooldown_seconds=cooldown_seconds,
                created_at=now,
                updated_at=now,
            )
            session.add(settings)
            try:
                await session.commit()
            except IntegrityError:
                # Another request created it first
                await session.rollback()
                result = await session.execute(select(BotSettings).where(BotSettings.guild_id == guild_id))
                return result.scalar_one()
            return settings

    async def update_bot_settings(self, guild_id: str, changes: dict[str, Any], now: datetime) -> Optional[BotSettings]:
        async with self._session() as session:
            result = await session.execute(select(BotSettings).where(BotSettings.guild_id == guild_id))
            settings = result.scalar_one_or_none()
            if not settings:
                return None
            for key, value in changes.items():
                # Assign fresh lists so the JSON columns are flagged dirty
                setattr(settings, key, list(value) if isinstance(value, (list, tuple, set)) else value)
            settings.updated_at = now
            await session.commit()
            return settings

    async def count_bot_settings(self) -> int:
        async with self._session() as session:
            return await session.scalar(select(func.count(BotSettings.id))) or 0

    async def max_cooldown_seconds(self) -> int:
        async with self._session() as session:
            return await session.scalar(select(func.max(BotSettings.cooldown_seconds))) or 0

    # --- Blacklist ---

    async def add_blacklist(
        self, requester_id: str, reason: Optional[str], created_by: str, scope_id: Optional[str], now: datetime
    ) -> BlacklistEntry:
        async with self._session() as session:
            result = await session.execute(
                select(BlacklistEntry).where(BlacklistEntry.requester_id == requester_id)
            )
            entry = result.scalar_one_or_none()
            if entry:
                entry.reason = reason
                entry.created_by = created_by
            else:
                entry = BlacklistEntry(
                    requester_id=requester_id,
                    scope_id=scope_id,
                    reason=reason,
                    created_by=created_by,
                    created_at=now,
                )
                session.add(entry)
            await session.commit()
            return entry

    async def remove_blacklist(self, requester_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(BlacklistEntry).where(BlacklistEntry.requester_id == requester_id)
            )
            await session.commit()
            return bool(result.rowcount)

    async def is_blacklisted(self, requester_id: str) -> bool:
        async with self._session() as session:
            found = await session.scalar(
                select(BlacklistEntry.id).where(BlacklistEntry.requester_id == requester_id)
            )
            return found is not None

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
        async with self._session() as session:
            entry = LogEntry(
                type=type,
                action=action,
                message=message,
                metadata_json=metadata,
                user_id=user_id,
                created_at=now,
            )
            session.add(entry)
            await session.commit()
            return entry

    async def list_logs(self, limit: Optional[int] = None) -> list[LogEntry]:
        query = select(LogEntry).order_by(LogEntry.created_at.desc(), LogEntry.id.desc())
        if limit and limit > 0:
            query = query.limit(limit)
        async with self._session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
