"""Per-guild bot settings: command prefix, role gating, cooldown."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from bot.models.base import Base


class BotSettings(Base):
    """Settings for one Discord guild. Created on first message in that guild.

    Empty allowed_role_ids: everyone may use user commands.
    Empty admin_role_ids: only members with the Administrator permission may use admin commands.
    """

    __tablename__ = "bot_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    prefix: Mapped[str] = mapped_column(String(8), nullable=False, default="!")
    allowed_role_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    admin_role_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    cooldown_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=3600)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
