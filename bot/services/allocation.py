"""Allocation engine: claim, release, restock and inventory administration.

Every operation returns either its value or a ClaimError result (see results.py).
Each inventory-changing call writes exactly one activity log entry describing its outcome.
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional, Union

import config
from bot.models import Account, AccountCategory, AccountStatus, BlacklistEntry, BotSettings, LogEntry, LogType
from bot.services.activity import ActivityItem, ActivityLog
from bot.services.context import PermissionLevel, RequesterContext, ScopeContext
from bot.services.drafts import EMAIL_RE, parse_account_lines, validate_draft
from bot.services.inventory_store import (
    AccountDraft,
    CooldownHit,
    DashboardStats,
    EDITABLE_ACCOUNT_FIELDS,
    InventoryStore,
    StockCount,
    StoreError,
)
from bot.services.policy import AccessPolicy, Clock, utcnow
from bot.services.results import (
    CategoryNotFound,
    ClaimError,
    CooldownActive,
    NotFoundError,
    PermissionDenied,
    StockExhausted,
    StorageFailure,
    ValidationError,
)

logger = logging.getLogger("stockroom.allocation")

CategoryRef = Union[int, str]

MAX_CATEGORY_NAME = 64
MAX_PREFIX = 8
SETTINGS_FIELDS = ("prefix", "allowed_role_ids", "admin_role_ids", "cooldown_seconds")


@dataclass(frozen=True)
class Profile:
    identity: str
    display_name: str
    generated_count: int
    blacklisted: bool
    cooldowns: dict[str, timedelta] = field(default_factory=dict)  # category name -> remaining


def storage_guarded(action: str):
    """Turn StoreError into StorageFailure, after an error log entry."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self: "AllocationEngine", *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except StoreError as e:
                logger.exception("Storage failure in %s", action)
                await self._record_storage_failure(action, e)
                return StorageFailure(str(e))

        return wrapper

    return decorator


class AllocationEngine:
    def __init__(
        self,
        store: InventoryStore,
        policy: Optional[AccessPolicy] = None,
        clock: Clock = utcnow,
        activity: Optional[ActivityLog] = None,
    ):
        self.store = store
        self.clock = clock
        self.policy = policy or AccessPolicy(store, clock=clock)
        self.activity = activity or ActivityLog(store, clock=clock)

    # --- helpers ---

    async def _record_storage_failure(self, action: str, error: Exception) -> None:
        try:
            await self.activity.record(
                LogType.ERROR,
                f"{action}_ERROR",
                f"Storage failure during {action.lower()}: {error}",
            )
        except StoreError:
            logger.error("Could not record storage failure for %s", action)

    async def find_category(self, ref: CategoryRef) -> Optional[AccountCategory]:
        if isinstance(ref, int):
            return await self.store.get_category(ref)
        name = str(ref).strip()
        if not name:
            return None
        category = await self.store.get_category_by_name(name)
        if category is None and name.isdigit():
            category = await self.store.get_category(int(name))
        return category

    def _admin_denied(self, operator: RequesterContext, scope: Optional[ScopeContext]) -> Optional[PermissionDenied]:
        if self.policy.is_allowed(operator, scope, PermissionLevel.ADMIN):
            return None
        return PermissionDenied("administrator permission required")

    async def _log(
        self,
        type: LogType,
        action: str,
        message: str,
        operator: Optional[RequesterContext] = None,
        **metadata: Any,
    ) -> None:
        await self.activity.record(
            type,
            action,
            message,
            user_id=operator.user_id if operator else None,
            metadata=metadata or None,
        )

    @storage_guarded("SCOPE_RESOLVE")
    async def resolve_scope(self, guild_id: Optional[str], guild_name: str = "") -> ScopeContext | StorageFailure:
        return await self.policy.resolve_scope(guild_id, guild_name)

    # --- claim / release ---

    @storage_guarded("ACCOUNT_GENERATION")
    async def claim(
        self,
        requester: RequesterContext,
        category_ref: CategoryRef,
        scope: Optional[ScopeContext],
    ) -> Account | ClaimError:
        """Hand the oldest claimable account in a category to the requester.

        scope None is a dashboard claim: admin only and exempt from cooldown.
        """
        scope_key = scope.key if scope else None
        meta = {"requester": requester.identity, "category": str(category_ref), "scope": scope_key}

        category = await self.find_category(category_ref)
        if category is None:
            await self._log(
                LogType.WARNING, "ACCOUNT_GENERATION_FAILED",
                f"{requester.label} requested unknown category '{category_ref}'", requester, **meta,
            )
            return CategoryNotFound(str(category_ref))

        level = PermissionLevel.ADMIN if scope is None else PermissionLevel.USER
        denied = None
        if not self.policy.is_allowed(requester, scope, level):
            denied = PermissionDenied()
        elif await self.store.is_blacklisted(requester.identity):
            denied = PermissionDenied("blacklisted")
        if denied:
            await self._log(
                LogType.WARNING, "ACCOUNT_GENERATION_FAILED",
                f"{requester.label} was denied a {category.name} account ({denied.reason})", requester, **meta,
            )
            return denied

        now = self.clock()
        window = timedelta(seconds=scope.settings.cooldown_seconds) if scope is not None else timedelta(0)
        if scope is not None:
            remaining = await self.policy.remaining_cooldown(requester.identity, category.id, scope)
            if remaining > timedelta(0):
                return await self._refuse_cooldown(requester, category, remaining, meta)

        outcome = await self.store.claim_next_available(
            category.id, requester.identity, scope_key, now, cooldown_seconds=int(window.total_seconds())
        )
        if isinstance(outcome, CooldownHit):
            # A concurrent claim by the same requester committed first
            return await self._refuse_cooldown(requester, category, window - (now - outcome.last_claimed_at), meta)
        if outcome is None:
            await self._log(
                LogType.WARNING, "STOCK_EXHAUSTED",
                f"No {category.name} accounts left for {requester.label}", requester, **meta,
            )
            return StockExhausted(category.name)

        account = outcome
        try:
            await self._log(
                LogType.SUCCESS, "ACCOUNT_GENERATED",
                f"{requester.label} generated a {category.name} account",
                requester, account_id=account.id, **meta,
            )
        except StoreError:
            # Claim already committed
            logger.exception("Could not record generation of account %s", account.id)
        return account

    async def _refuse_cooldown(
        self, requester: RequesterContext, category: AccountCategory, remaining: timedelta, meta: dict[str, Any]
    ) -> CooldownActive:
        await self._log(
            LogType.WARNING, "COOLDOWN_ACTIVE",
            f"{requester.label} is on cooldown for {category.name} "
            f"({int(remaining.total_seconds())}s left)", requester, **meta,
        )
        return CooldownActive(remaining)

    @storage_guarded("ACCOUNT_RELEASE")
    async def release(self, account_id: int, reason: str = "") -> Account | NotFoundError | StorageFailure:
        """Return a generated account to the pool. No-op when already available."""
        account, changed = await self.store.release_account(account_id, self.clock())
        if account is None:
            return NotFoundError(account_id)
        if changed:
            await self._log(
                LogType.WARNING if reason else LogType.INFO,
                "ACCOUNT_RELEASED",
                f"Account #{account_id} returned to stock" + (f": {reason}" if reason else ""),
                account_id=account_id,
            )
        return account

    # --- administration ---

    @storage_guarded("ACCOUNT_RESTOCK")
    async def restock(
        self, account_id: int, operator: RequesterContext, scope: Optional[ScopeContext] = None
    ) -> Account | ClaimError:
        denied = self._admin_denied(operator, scope)
        if denied:
            await self._log(
                LogType.WARNING, "ACCOUNT_RESTOCK_FAILED",
                f"{operator.label} is not allowed to restock account #{account_id}", operator,
            )
            return denied
        account = await self.store.restock_account(account_id, self.clock())
        if account is None:
            await self._log(
                LogType.WARNING, "ACCOUNT_RESTOCK_FAILED",
                f"{operator.label} tried to restock missing account #{account_id}", operator,
            )
            return NotFoundError(account_id)
        await self._log(
            LogType.INFO, "ACCOUNT_RESTOCKED",
            f"{operator.label} restocked account #{account_id}", operator, account_id=account_id,
        )
        return account

    @storage_guarded("ACCOUNTS_ADD")
    async def add(
        self,
        drafts: list[AccountDraft],
        category_ref: CategoryRef,
        operator: RequesterContext,
        scope: Optional[ScopeContext] = None,
        create_category: bool = False,
    ) -> list[Account] | ClaimError:
        """Insert a batch of accounts. Any invalid draft rejects the whole batch."""
        denied = self._admin_denied(operator, scope)
        if denied:
            await self._log(
                LogType.WARNING, "ACCOUNTS_ADD_FAILED",
                f"{operator.label} is not allowed to add accounts", operator,
            )
            return denied

        now = self.clock()
        invalid = None
        checked_drafts: list[AccountDraft] = []
        if not drafts:
            invalid = ValidationError(0, "no accounts given")
        for number, draft in enumerate(drafts, start=1):
            checked = validate_draft(draft.email, draft.password, now, draft.expires_at, line_number=number)
            if isinstance(checked, ValidationError):
                invalid = checked
                break
            checked_drafts.append(checked)
        if invalid:
            await self._log(
                LogType.WARNING, "ACCOUNTS_ADD_FAILED",
                f"Rejected batch from {operator.label}: line {invalid.line_number}: {invalid.reason}", operator,
            )
            return invalid
        return await self._insert(checked_drafts, category_ref, operator, create_category, now)

    @storage_guarded("ACCOUNTS_ADD")
    async def add_from_text(
        self,
        text: str,
        category_ref: CategoryRef,
        operator: RequesterContext,
        scope: Optional[ScopeContext] = None,
        create_category: bool = False,
    ) -> list[Account] | ClaimError:
        """Like add(), from `email:password` lines."""
        denied = self._admin_denied(operator, scope)
        if denied:
            await self._log(
                LogType.WARNING, "ACCOUNTS_ADD_FAILED",
                f"{operator.label} is not allowed to add accounts", operator,
            )
            return denied

        now = self.clock()
        parsed = parse_account_lines(text.splitlines(), now)
        if isinstance(parsed, ValidationError):
            await self._log(
                LogType.WARNING, "ACCOUNTS_ADD_FAILED",
                f"Rejected batch from {operator.label}: line {parsed.line_number}: {parsed.reason}", operator,
            )
            return parsed
        return await self._insert(parsed, category_ref, operator, create_category, now)

    async def _insert(self, drafts, category_ref, operator, create_category, now) -> list[Account] | ClaimError:
        category = await self.find_category(category_ref)
        created_category = False
        if category is None:
            name = str(category_ref).strip()
            if not create_category or isinstance(category_ref, int) or not name or len(name) > MAX_CATEGORY_NAME:
                await self._log(
                    LogType.WARNING, "ACCOUNTS_ADD_FAILED",
                    f"{operator.label} tried to add accounts to unknown category '{category_ref}'", operator,
                )
                return CategoryNotFound(str(category_ref))
            category = await self.store.create_category(name, None, now)
            created_category = True

        accounts = await self.store.add_accounts(category.id, drafts, now)
        message = f"{operator.label} added {len(accounts)} account(s) to {category.name}"
        if created_category:
            message += " (new category)"
        await self._log(
            LogType.SUCCESS, "ACCOUNTS_ADDED", message, operator,
            category=category.name, count=len(accounts),
        )
        return accounts

    @storage_guarded("ACCOUNT_REMOVE")
    async def remove(
        self,
        category_ref: CategoryRef,
        email: str,
        operator: RequesterContext,
        scope: Optional[ScopeContext] = None,
    ) -> bool | ClaimError:
        """Delete the oldest account with this email. False when nothing matched."""
        denied = self._admin_denied(operator, scope)
        if denied:
            await self._log(
                LogType.WARNING, "ACCOUNT_REMOVE_FAILED",
                f"{operator.label} is not allowed to remove accounts", operator,
            )
            return denied
        category = await self.find_category(category_ref)
        if category is None:
            await self._log(
                LogType.WARNING, "ACCOUNT_REMOVE_FAILED",
                f"{operator.label} tried to remove from unknown category '{category_ref}'", operator,
            )
            return CategoryNotFound(str(category_ref))

        removed = await self.store.remove_account_by_email(category.id, email.strip())
        if removed is None:
            await self._log(
                LogType.WARNING, "ACCOUNT_REMOVE_FAILED",
                f"No {category.name} account matching {email} to remove", operator,
            )
            return False
        await self._log(
            LogType.INFO, "ACCOUNT_REMOVED",
            f"{operator.label} removed {removed.email} from {category.name}", operator, account_id=removed.id,
        )
        return True

    @storage_guarded("ACCOUNT_UPDATE")
    async def update_account(
        self,
        account_id: int,
        changes: dict[str, Any],
        operator: RequesterContext,
        scope: Optional[ScopeContext] = None,
    ) -> Account | ClaimError:
        """Dashboard edit. Status may be set to available or expired, never generated."""
        denied = self._admin_denied(operator, scope)
        if denied:
            return denied
        unknown = set(changes) - set(EDITABLE_ACCOUNT_FIELDS)
        if unknown:
            return ValidationError(0, f"cannot edit {', '.join(sorted(unknown))}")
        if "status" in changes:
            status = changes["status"]
            if status == AccountStatus.GENERATED.value:
                return ValidationError(0, "accounts can only become generated by being claimed")
            if status not in (AccountStatus.AVAILABLE.value, AccountStatus.EXPIRED.value):
                return ValidationError(0, f"unknown status '{status}'")
        if "email" in changes and not EMAIL_RE.match(changes["email"] or ""):
            return ValidationError(0, f"'{changes['email']}' is not a valid email address")
        if "password" in changes and not changes["password"]:
            return ValidationError(0, "missing password")

        account = await self.store.update_account(account_id, changes, self.clock())
        if account is None:
            return NotFoundError(account_id)
        await self._log(
            LogType.INFO, "ACCOUNT_UPDATED",
            f"{operator.label} updated account #{account_id} ({', '.join(sorted(changes))})",
            operator, account_id=account_id,
        )
        return account

    @storage_guarded("ACCOUNT_DELETE")
    async def delete_account(
        self, account_id: int, operator: RequesterContext, scope: Optional[ScopeContext] = None
    ) -> Account | ClaimError:
        denied = self._admin_denied(operator, scope)
        if denied:
            return denied
        account = await self.store.delete_account(account_id)
        if account is None:
            return NotFoundError(account_id)
        await self._log(
            LogType.INFO, "ACCOUNT_DELETED",
            f"{operator.label} deleted account #{account_id} ({account.email})", operator, account_id=account_id,
        )
        return account

    @storage_guarded("CATEGORY_CREATE")
    async def create_category(
        self,
        name: str,
        description: Optional[str],
        operator: RequesterContext,
        scope: Optional[ScopeContext] = None,
    ) -> AccountCategory | ClaimError:
        denied = self._admin_denied(operator, scope)
        if denied:
            return denied
        name = (name or "").strip()
        if not name or len(name) > MAX_CATEGORY_NAME:
            return ValidationError(0, f"category name must be 1-{MAX_CATEGORY_NAME} characters")
        if await self.store.get_category_by_name(name):
            return ValidationError(0, f"category '{name}' already exists")
        category = await self.store.create_category(name, description, self.clock())
        await self._log(LogType.INFO, "CATEGORY_CREATED", f"{operator.label} created category {name}", operator)
        return category

    @storage_guarded("CATEGORY_UPDATE")
    async def update_category(
        self,
        category_id: int,
        description: Optional[str],
        operator: RequesterContext,
        scope: Optional[ScopeContext] = None,
    ) -> AccountCategory | ClaimError:
        denied = self._admin_denied(operator, scope)
        if denied:
            return denied
        category = await self.store.update_category_description(category_id, description)
        if category is None:
            return CategoryNotFound(str(category_id))
        await self._log(
            LogType.INFO, "CATEGORY_UPDATED", f"{operator.label} updated category {category.name}", operator,
        )
        return category

    @storage_guarded("USER_BLACKLIST")
    async def blacklist(
        self,
        target_id: str,
        reason: Optional[str],
        operator: RequesterContext,
        scope: Optional[ScopeContext] = None,
    ) -> BlacklistEntry | ClaimError:
        denied = self._admin_denied(operator, scope)
        if denied:
            return denied
        entry = await self.store.add_blacklist(
            target_id, reason, operator.identity, scope.key if scope else None, self.clock()
        )
        await self._log(
            LogType.WARNING, "USER_BLACKLISTED",
            f"{operator.label} blacklisted {target_id}" + (f": {reason}" if reason else ""), operator,
        )
        return entry

    @storage_guarded("USER_UNBLACKLIST")
    async def unblacklist(
        self, target_id: str, operator: RequesterContext, scope: Optional[ScopeContext] = None
    ) -> bool | ClaimError:
        denied = self._admin_denied(operator, scope)
        if denied:
            return denied
        removed = await self.store.remove_blacklist(target_id)
        if removed:
            await self._log(LogType.INFO, "USER_UNBLACKLISTED", f"{operator.label} unblacklisted {target_id}", operator)
        return removed

    @storage_guarded("SETTINGS_UPDATE")
    async def update_settings(
        self,
        guild_id: str,
        changes: dict[str, Any],
        operator: RequesterContext,
        scope: Optional[ScopeContext] = None,
    ) -> BotSettings | ClaimError:
        """Change a guild's prefix, role lists or cooldown."""
        denied = self._admin_denied(operator, scope)
        if denied:
            return denied
        unknown = set(changes) - set(SETTINGS_FIELDS)
        if unknown:
            return ValidationError(0, f"cannot edit {', '.join(sorted(unknown))}")
        if "cooldown_seconds" in changes and (
            not isinstance(changes["cooldown_seconds"], int) or changes["cooldown_seconds"] < 0
        ):
            return ValidationError(0, "cooldown must be a non-negative number of seconds")
        if "prefix" in changes and not 0 < len((changes["prefix"] or "").strip()) <= MAX_PREFIX:
            return ValidationError(0, f"prefix must be 1-{MAX_PREFIX} characters")
        changes = dict(changes)
        for key in ("allowed_role_ids", "admin_role_ids"):
            if key in changes:
                changes[key] = [str(r) for r in changes[key] or []]

        await self.policy.resolve_scope(guild_id)
        settings = await self.store.update_bot_settings(guild_id, changes, self.clock())
        if settings is None:
            return NotFoundError()
        await self._log(
            LogType.INFO, "SETTINGS_UPDATED",
            f"{operator.label} updated settings for guild {guild_id} ({', '.join(sorted(changes))})", operator,
        )
        return settings

    async def set_cooldown(
        self, minutes: int, operator: RequesterContext, scope: ScopeContext
    ) -> BotSettings | ClaimError:
        if not scope.in_guild:
            return ValidationError(0, "cooldowns can only be configured inside a server")
        if minutes < 0:
            return ValidationError(0, "cooldown must not be negative")
        return await self.update_settings(scope.guild_id, {"cooldown_seconds": minutes * 60}, operator, scope)

    # --- queries ---

    @storage_guarded("STOCK_QUERY")
    async def stock(self, category_ref: Optional[CategoryRef] = None) -> list[StockCount] | ClaimError:
        now = self.clock()
        if category_ref is None:
            return await self.store.stock_counts(now)
        category = await self.find_category(category_ref)
        if category is None:
            return CategoryNotFound(str(category_ref))
        return await self.store.stock_counts(now, category.id)

    @storage_guarded("DASHBOARD_STATS")
    async def dashboard_stats(self) -> DashboardStats | StorageFailure:
        now = self.clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return await self.store.dashboard_stats(now, day_start)

    @storage_guarded("PROFILE")
    async def profile(self, requester: RequesterContext, scope: ScopeContext) -> Profile | StorageFailure:
        names = {c.id: c.name for c in await self.store.list_categories()}
        cooldowns = {
            names.get(category_id, str(category_id)): remaining
            for category_id, remaining in (await self.policy.cooldowns_for(requester.identity, scope)).items()
        }
        return Profile(
            identity=requester.identity,
            display_name=requester.label,
            generated_count=await self.store.count_generated_by(requester.identity),
            blacklisted=await self.store.is_blacklisted(requester.identity),
            cooldowns=cooldowns,
        )

    @storage_guarded("CATEGORY_GET")
    async def get_category(self, category_ref: CategoryRef) -> AccountCategory | CategoryNotFound | StorageFailure:
        category = await self.find_category(category_ref)
        return category if category is not None else CategoryNotFound(str(category_ref))

    @storage_guarded("CATEGORY_LIST")
    async def list_categories(self) -> list[AccountCategory] | StorageFailure:
        return await self.store.list_categories()

    @storage_guarded("ACCOUNT_LIST")
    async def list_accounts(
        self,
        category_id: Optional[int] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[Account] | StorageFailure:
        return await self.store.list_accounts(self.clock(), category_id=category_id, status=status, search=search)

    @storage_guarded("ACCOUNT_GET")
    async def get_account(self, account_id: int) -> Account | NotFoundError | StorageFailure:
        account = await self.store.get_account(account_id)
        return account if account is not None else NotFoundError(account_id)

    @storage_guarded("ACTIVITY_LIST")
    async def list_recent_activity(self, limit: int = 10) -> list[ActivityItem] | StorageFailure:
        return await self.activity.list_recent_activity(limit)

    @storage_guarded("LOG_LIST")
    async def list_logs(self, limit: Optional[int] = None) -> list[LogEntry] | StorageFailure:
        return await self.activity.list_logs(limit)

    # --- housekeeping ---

    @storage_guarded("COOLDOWN_PURGE")
    async def purge_stale_cooldowns(self) -> int | StorageFailure:
        """Drop cooldown rows older than the longest window any scope uses."""
        longest = max(await self.store.max_cooldown_seconds(), config.DEFAULT_COOLDOWN_SECONDS)
        removed = await self.store.purge_cooldowns(self.clock() - timedelta(seconds=longest))
        if removed:
            logger.info("Purged %d stale cooldown row(s)", removed)
        return removed
