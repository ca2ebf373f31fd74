"""Shared API utilities."""
from __future__ import annotations

from functools import lru_cache
from typing import TypeVar

from fastapi import HTTPException

from bot.services.allocation import AllocationEngine
from bot.services.inventory_store import create_store
from bot.services.results import (
    CategoryNotFound,
    ClaimError,
    CooldownActive,
    DeliveryFailed,
    NotFoundError,
    PermissionDenied,
    StockExhausted,
    StorageFailure,
    ValidationError,
)

T = TypeVar("T")

ERROR_STATUS: dict[type[ClaimError], int] = {
    CategoryNotFound: 404,
    NotFoundError: 404,
    PermissionDenied: 403,
    CooldownActive: 429,
    StockExhausted: 409,
    ValidationError: 400,
    DeliveryFailed: 502,
    StorageFailure: 503,
}


@lru_cache
def get_engine() -> AllocationEngine:
    """Process-wide engine over the configured store. FastAPI dependency."""
    return AllocationEngine(create_store())


def error_message(error: ClaimError) -> str:
    """Plain-text description of an engine error, for HTTP responses."""
    if isinstance(error, CategoryNotFound):
        return f"Category '{error.ref}' not found"
    if isinstance(error, NotFoundError):
        return f"Account {error.account_id} not found" if error.account_id is not None else "Not found"
    if isinstance(error, PermissionDenied):
        return f"Permission denied: {error.reason}"
    if isinstance(error, CooldownActive):
        return f"Cooldown active, {error.remaining_seconds}s remaining"
    if isinstance(error, StockExhausted):
        return f"No {error.category} accounts available"
    if isinstance(error, ValidationError):
        if error.line_number:
            return f"Line {error.line_number}: {error.reason}"
        return error.reason
    if isinstance(error, DeliveryFailed):
        return f"Could not deliver account {error.account_id}: {error.reason}"
    return "Storage unavailable, try again later"


def unwrap(result: T | ClaimError) -> T:
    """Return a success value, or raise the HTTPException matching the error kind."""
    if not isinstance(result, ClaimError):
        return result
    headers = None
    if isinstance(result, CooldownActive):
        headers = {"Retry-After": str(result.remaining_seconds)}
    raise HTTPException(ERROR_STATUS.get(type(result), 400), error_message(result), headers=headers)
