"""Per-guild bot settings API: prefix, role gates, cooldown (admin only)."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, field_validator

from bot.models import User
from bot.services.allocation import AllocationEngine
from web.auth import operator_context, require_admin_user
from web.api.utils import get_engine, unwrap

router = APIRouter(prefix="/api/bot-settings", tags=["bot-settings"])


def _coerce_role_ids(v):
    """Role IDs as strings (snowflakes lose precision as JS numbers)."""
    if v is None:
        return None
    return [str(r).strip() for r in v if str(r).strip()]


class BotSettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    guild_id: str
    prefix: str
    allowed_role_ids: list[str]
    admin_role_ids: list[str]
    cooldown_seconds: int


class BotSettingsUpdate(BaseModel):
    prefix: Optional[str] = None
    allowed_role_ids: Optional[list[str | int]] = None
    admin_role_ids: Optional[list[str | int]] = None
    cooldown_seconds: Optional[int] = None

    @field_validator("allowed_role_ids", "admin_role_ids", mode="before")
    @classmethod
    def coerce_role_ids(cls, v):
        return _coerce_role_ids(v)


@router.get("/{guild_id}", response_model=BotSettingsResponse)
async def get_bot_settings(
    guild_id: str, admin: User = Depends(require_admin_user), engine: AllocationEngine = Depends(get_engine)
):
    """Settings for a guild, created with defaults if the bot has not seen it yet."""
    scope = unwrap(await engine.resolve_scope(guild_id))
    return scope.settings


@router.patch("/{guild_id}", response_model=BotSettingsResponse)
async def update_bot_settings(
    guild_id: str,
    body: BotSettingsUpdate,
    admin: User = Depends(require_admin_user),
    engine: AllocationEngine = Depends(get_engine),
):
    """Update a guild's settings. Only fields present in the body change."""
    changes = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
    if "prefix" in changes:
        changes["prefix"] = changes["prefix"].strip()
    return unwrap(await engine.update_settings(guild_id, changes, operator_context(admin)))
