"""API routes for inventory management: categories, accounts, dashboard and logs."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict

import config
from bot.models import Account, AccountCategory, User
from bot.services.allocation import AllocationEngine
from bot.services.command_router import COMMANDS
from bot.services.context import PermissionLevel
from bot.services.inventory_store import AccountDraft
from bot.services.results import ValidationError
from web.auth import operator_context, require_admin_user, require_user
from web.api.utils import get_engine, unwrap

logger = logging.getLogger("stockroom.web")

router = APIRouter(prefix="/api", tags=["inventory"])


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC; convert aware datetimes from clients."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# --- Pydantic schemas ---


class CategoryResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    available: int = 0
    total: int = 0


class CategoryCreate(BaseModel):
    name: str
    description: Optional[str] = None


class CategoryUpdate(BaseModel):
    description: Optional[str] = None


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    password: str
    category_id: int
    category_name: Optional[str] = None
    status: str  # effective status: expired once past expires_at
    expires_at: Optional[datetime] = None
    generated_by: Optional[str] = None
    generated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AccountCreate(BaseModel):
    email: str
    password: str
    category: str  # name or id
    expires_at: Optional[datetime] = None


class AccountDraftIn(BaseModel):
    email: str
    password: str
    expires_at: Optional[datetime] = None


class BulkAccountCreate(BaseModel):
    category: str
    accounts: Optional[list[AccountDraftIn]] = None
    text: Optional[str] = None  # email:password per line
    create_category: bool = False


class AccountUpdate(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    status: Optional[str] = None  # available | expired
    expires_at: Optional[datetime] = None


class ClaimRequest(BaseModel):
    category: str


class ActivityResponse(BaseModel):
    id: int
    type: str
    title: str
    message: str
    timestamp: datetime


class LogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    action: str
    message: str
    user_id: Optional[int] = None
    created_at: datetime


def _account_response(account: Account, now: datetime, names: dict[int, str]) -> AccountResponse:
    data = AccountResponse.model_validate(account)
    return data.model_copy(
        update={"status": account.effective_status(now), "category_name": names.get(account.category_id)}
    )


async def _category_names(engine: AllocationEngine) -> dict[int, str]:
    categories: list[AccountCategory] = unwrap(await engine.list_categories())
    return {c.id: c.name for c in categories}


async def _single_account(engine: AllocationEngine, account: Account) -> AccountResponse:
    return _account_response(account, engine.clock(), await _category_names(engine))


# --- Categories ---


@router.get("/categories", response_model=list[CategoryResponse])
async def list_categories(user: User = Depends(require_user), engine: AllocationEngine = Depends(get_engine)):
    """All categories with stock counts."""
    counts = unwrap(await engine.stock())
    descriptions = {c.id: c.description for c in unwrap(await engine.list_categories())}
    return [
        CategoryResponse(
            id=c.category_id,
            name=c.name,
            description=descriptions.get(c.category_id),
            available=c.available,
            total=c.total,
        )
        for c in counts
    ]


@router.post("/categories", response_model=CategoryResponse)
async def create_category(
    body: CategoryCreate, admin: User = Depends(require_admin_user), engine: AllocationEngine = Depends(get_engine)
):
    """Create a category (admin only)."""
    category = unwrap(await engine.create_category(body.name, body.description, operator_context(admin)))
    return CategoryResponse(id=category.id, name=category.name, description=category.description)


@router.patch("/categories/{category_id}", response_model=CategoryResponse)
async def update_category(
    category_id: int,
    body: CategoryUpdate,
    admin: User = Depends(require_admin_user),
    engine: AllocationEngine = Depends(get_engine),
):
    """Update a category description (admin only)."""
    category = unwrap(await engine.update_category(category_id, body.description, operator_context(admin)))
    counts = unwrap(await engine.stock(category.id))
    return CategoryResponse(
        id=category.id,
        name=category.name,
        description=category.description,
        available=counts[0].available if counts else 0,
        total=counts[0].total if counts else 0,
    )


# --- Accounts ---


@router.get("/accounts", response_model=list[AccountResponse])
async def list_accounts(
    search: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    admin: User = Depends(require_admin_user),
    engine: AllocationEngine = Depends(get_engine),
):
    """List accounts, filtered by email search, category (name or id) and effective status."""
    category_id = None
    if category and category != "all":
        category_id = unwrap(await engine.get_category(category)).id
    now = engine.clock()
    accounts = unwrap(await engine.list_accounts(category_id, status=status or None, search=search or None))
    names = await _category_names(engine)
    return [_account_response(a, now, names) for a in accounts]


@router.post("/accounts/claim", response_model=AccountResponse)
async def claim_account(
    body: ClaimRequest, admin: User = Depends(require_admin_user), engine: AllocationEngine = Depends(get_engine)
):
    """Claim the next available account from the dashboard (admin, no cooldown)."""
    account = unwrap(await engine.claim(operator_context(admin), body.category, None))
    return await _single_account(engine, account)


@router.post("/accounts/bulk", response_model=list[AccountResponse])
async def bulk_add_accounts(
    body: BulkAccountCreate, admin: User = Depends(require_admin_user), engine: AllocationEngine = Depends(get_engine)
):
    """Add many accounts at once, from a list or from email:password text. All or nothing."""
    operator = operator_context(admin)
    if body.text is not None:
        result = await engine.add_from_text(body.text, body.category, operator, create_category=body.create_category)
    elif body.accounts is not None:
        drafts = [AccountDraft(a.email.strip(), a.password, _naive_utc(a.expires_at)) for a in body.accounts]
        result = await engine.add(drafts, body.category, operator, create_category=body.create_category)
    else:
        result = ValidationError(0, "provide either accounts or text")
    accounts = unwrap(result)
    now = engine.clock()
    names = await _category_names(engine)
    return [_account_response(a, now, names) for a in accounts]


@router.post("/accounts", response_model=AccountResponse)
async def create_account(
    body: AccountCreate, admin: User = Depends(require_admin_user), engine: AllocationEngine = Depends(get_engine)
):
    """Add a single account (admin only)."""
    draft = AccountDraft(body.email.strip(), body.password, _naive_utc(body.expires_at))
    accounts = unwrap(await engine.add([draft], body.category, operator_context(admin)))
    return await _single_account(engine, accounts[0])


@router.get("/accounts/{account_id}", response_model=AccountResponse)
async def get_account(
    account_id: int, admin: User = Depends(require_admin_user), engine: AllocationEngine = Depends(get_engine)
):
    account = unwrap(await engine.get_account(account_id))
    return await _single_account(engine, account)


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
async def update_account(
    account_id: int,
    body: AccountUpdate,
    admin: User = Depends(require_admin_user),
    engine: AllocationEngine = Depends(get_engine),
):
    """Edit an account (admin only). Status can be set to available or expired."""
    changes = body.model_dump(exclude_unset=True)
    if "expires_at" in changes:
        changes["expires_at"] = _naive_utc(changes["expires_at"])
    if "email" in changes and changes["email"] is not None:
        changes["email"] = changes["email"].strip()
    account = unwrap(await engine.update_account(account_id, changes, operator_context(admin)))
    return await _single_account(engine, account)


@router.delete("/accounts/{account_id}")
async def delete_account(
    account_id: int, admin: User = Depends(require_admin_user), engine: AllocationEngine = Depends(get_engine)
):
    unwrap(await engine.delete_account(account_id, operator_context(admin)))
    return {"ok": True}


@router.post("/accounts/{account_id}/restock", response_model=AccountResponse)
async def restock_account(
    account_id: int, admin: User = Depends(require_admin_user), engine: AllocationEngine = Depends(get_engine)
):
    """Put an account back in stock (admin only)."""
    account = unwrap(await engine.restock(account_id, operator_context(admin)))
    return await _single_account(engine, account)


@router.post("/accounts/{account_id}/release", response_model=AccountResponse)
async def release_account(
    account_id: int, admin: User = Depends(require_admin_user), engine: AllocationEngine = Depends(get_engine)
):
    """Return a generated account to stock after a failed hand-off. No-op if already available."""
    account = unwrap(await engine.release(account_id, reason=f"released by {admin.username}"))
    return await _single_account(engine, account)


# --- Dashboard ---


async def _fetch_bot_status() -> Optional[dict]:
    """Ask the bot for its status. None when it is unreachable or not configured."""
    if not config.INTERNAL_API_SECRET or not config.BOT_INTERNAL_URL:
        return None
    url = f"{config.BOT_INTERNAL_URL.rstrip('/')}/internal/status"
    try:
        async with httpx.AsyncClient(timeout=3.0) as client:
            r = await client.get(url, headers={"Authorization": f"Bearer {config.INTERNAL_API_SECRET}"})
    except httpx.HTTPError as e:
        logger.info("Bot status check failed: %s", e)
        return None
    if r.status_code != 200:
        logger.info("Bot status check returned %s", r.status_code)
        return None
    return r.json()


@router.get("/dashboard/stats")
async def dashboard_stats(user: User = Depends(require_user), engine: AllocationEngine = Depends(get_engine)):
    """Totals for the dashboard cards, plus whether the bot is online."""
    stats = unwrap(await engine.dashboard_stats())
    bot = await _fetch_bot_status()
    online = bool(bot and bot.get("online"))
    return {
        "total_accounts": stats.total_accounts,
        "available_accounts": stats.available_accounts,
        "generated_today": stats.generated_today,
        "category_counts": stats.category_counts,
        "connected_servers": bot.get("guilds", stats.connected_servers) if bot else stats.connected_servers,
        "last_generation": stats.last_generation,
        "bot_status": "online" if online else "offline",
        "bot_uptime_seconds": bot.get("uptime_seconds") if online else None,
    }


@router.get("/dashboard/activity", response_model=list[ActivityResponse])
async def dashboard_activity(
    limit: int = Query(10, ge=1, le=100),
    admin: User = Depends(require_admin_user),
    engine: AllocationEngine = Depends(get_engine),
):
    """Most recent activity, newest first."""
    items = unwrap(await engine.list_recent_activity(limit))
    return [ActivityResponse(id=i.id, type=i.type, title=i.title, message=i.message, timestamp=i.timestamp) for i in items]


@router.get("/logs", response_model=list[LogResponse])
async def list_logs(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    admin: User = Depends(require_admin_user),
    engine: AllocationEngine = Depends(get_engine),
):
    """Full activity log, newest first (admin only)."""
    return unwrap(await engine.list_logs(limit))


@router.get("/commands")
async def list_commands(user: User = Depends(require_user)):
    """Bot commands, admin ones only for admins."""
    return [
        {
            "name": name,
            "usage": f"{config.DEFAULT_PREFIX}{command.usage}",
            "description": command.description,
            "admin_only": command.level == PermissionLevel.ADMIN,
        }
        for name, command in COMMANDS.items()
        if command.level == PermissionLevel.USER or user.is_admin
    ]
