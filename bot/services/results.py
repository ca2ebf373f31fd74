"""Typed error results returned by the allocation engine.

Expected failures are returned, not raised, so every caller handles each kind
explicitly. Use isinstance() against ClaimError (or a specific kind) to tell a
result apart from a success value.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional


@dataclass(frozen=True)
class ClaimError:
    """Base for all error results."""

    @property
    def kind(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class CategoryNotFound(ClaimError):
    ref: str


@dataclass(frozen=True)
class PermissionDenied(ClaimError):
    reason: str = "insufficient permissions"


@dataclass(frozen=True)
class CooldownActive(ClaimError):
    remaining: timedelta

    @property
    def remaining_seconds(self) -> int:
        return max(0, int(self.remaining.total_seconds()))


@dataclass(frozen=True)
class StockExhausted(ClaimError):
    category: str


@dataclass(frozen=True)
class ValidationError(ClaimError):
    line_number: int  # 1-based; 0 when the error is not tied to a line
    reason: str


@dataclass(frozen=True)
class NotFoundError(ClaimError):
    account_id: Optional[int] = None


@dataclass(frozen=True)
class DeliveryFailed(ClaimError):
    account_id: int
    reason: str = ""


@dataclass(frozen=True)
class StorageFailure(ClaimError):
    detail: str = ""
