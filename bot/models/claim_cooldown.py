"""Last successful claim per (requester, category, scope) - the cooldown tracker."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bot.models.base import Base


class ClaimCooldown(Base):
    """Written in the same transaction as the claim it records."""

    __tablename__ = "claim_cooldowns"
    __table_args__ = (
        UniqueConstraint("requester_id", "category_id", "scope_id", name="uq_claim_cooldown_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category_id: Mapped[int] = mapped_column(ForeignKey("account_categories.id"), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(32), nullable=False)  # guild id, or "dm"
    last_claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
