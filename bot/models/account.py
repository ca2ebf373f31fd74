"""Stocked service account (credential pair) and its status lifecycle."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bot.models.base import Base


class AccountStatus(str, enum.Enum):
    AVAILABLE = "available"
    GENERATED = "generated"
    EXPIRED = "expired"


class Account(Base):
    """Credential pair allocatable to exactly one requester at a time.

    status == generated  <=> generated_by and generated_at are set
    status == available  <=> generated_by and generated_at are NULL
    """

    __tablename__ = "accounts"
    __table_args__ = (
        # Claim lookup: oldest available account in a category
        Index("ix_accounts_claim", "category_id", "status", "created_at", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    password: Mapped[str] = mapped_column(String(255), nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("account_categories.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=AccountStatus.AVAILABLE.value)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    generated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # requester identity
    generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    category: Mapped["AccountCategory"] = relationship("AccountCategory", back_populates="accounts")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def effective_status(self, now: datetime) -> str:
        """Stored status, except accounts past expires_at read as expired."""
        if self.is_expired(now):
            return AccountStatus.EXPIRED.value
        return self.status

    def is_claimable(self, now: datetime) -> bool:
        return self.status == AccountStatus.AVAILABLE.value and not self.is_expired(now)

    def mark_generated(self, requester_id: str, now: datetime) -> None:
        self.status = AccountStatus.GENERATED.value
        self.generated_by = requester_id
        self.generated_at = now
        self.updated_at = now

    def mark_available(self, now: datetime) -> None:
        self.status = AccountStatus.AVAILABLE.value
        self.generated_by = None
        self.generated_at = None
        self.updated_at = now
