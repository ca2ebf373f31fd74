"""Parsing and validation of new-account input (bulk text and structured drafts)."""
from __future__ import annotations

import re
from datetime import datetime
from typing import Iterable, Optional

from bot.services.inventory_store import AccountDraft
from bot.services.results import ValidationError

EMAIL_RE = re.compile(r"^[^@\s:]+@[^@\s:]+\.[^@\s:]+$")
MAX_FIELD_LENGTH = 255


def validate_draft(
    email: str,
    password: str,
    now: datetime,
    expires_at: Optional[datetime] = None,
    line_number: int = 0,
) -> AccountDraft | ValidationError:
    """Validate one account. Returns the draft or the reason it was rejected."""
    email = (email or "").strip()
    if not email:
        return ValidationError(line_number, "missing email")
    if not EMAIL_RE.match(email):
        return ValidationError(line_number, f"'{email}' is not a valid email address")
    if not password:
        return ValidationError(line_number, "missing password")
    if any(ch.isspace() for ch in password):
        return ValidationError(line_number, "password must not contain whitespace")
    if len(email) > MAX_FIELD_LENGTH or len(password) > MAX_FIELD_LENGTH:
        return ValidationError(line_number, f"fields are limited to {MAX_FIELD_LENGTH} characters")
    if expires_at is not None:
        if expires_at.tzinfo is not None:
            return ValidationError(line_number, "expiry must be a naive UTC timestamp")
        if expires_at <= now:
            return ValidationError(line_number, "expiry must be in the future")
    return AccountDraft(email=email, password=password, expires_at=expires_at)


def parse_account_line(line: str, line_number: int, now: datetime) -> AccountDraft | ValidationError:
    """Parse `email:password`. The password may itself contain colons."""
    email, sep, password = line.strip().partition(":")
    if not sep:
        return ValidationError(line_number, "expected format email:password")
    return validate_draft(email, password, now, line_number=line_number)


def parse_account_lines(lines: Iterable[str], now: datetime) -> list[AccountDraft] | ValidationError:
    """Parse a batch. Blank lines are skipped but still counted; the first bad line fails the batch."""
    drafts = []
    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        parsed = parse_account_line(line, number, now)
        if isinstance(parsed, ValidationError):
            return parsed
        drafts.append(parsed)
    if not drafts:
        return ValidationError(0, "no accounts given")
    return drafts
