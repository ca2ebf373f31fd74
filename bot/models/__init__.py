"""Database models."""
from bot.models.base import Base, init_db
from bot.models.category import AccountCategory
from bot.models.account import Account, AccountStatus
from bot.models.bot_settings import BotSettings
from bot.models.claim_cooldown import ClaimCooldown
from bot.models.blacklist import BlacklistEntry
from bot.models.log_entry import LogEntry, LogType
from bot.models.user import User  # noqa: F401 - for metadata

__all__ = [
    "Base",
    "AccountCategory",
    "Account",
    "AccountStatus",
    "BotSettings",
    "ClaimCooldown",
    "BlacklistEntry",
    "LogEntry",
    "LogType",
    "User",
    "init_db",
]
