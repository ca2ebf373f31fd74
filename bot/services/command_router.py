"""Prefix command router: text in, exactly one reply out.

Transport-agnostic; the Discord listener adapts messages to InboundMessage and
channels to ChatChannel.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Optional, Protocol

import config
from bot.models import Account
from bot.services.allocation import AllocationEngine, Profile
from bot.services.context import PermissionLevel, RequesterContext, ScopeContext
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

logger = logging.getLogger("stockroom.router")

USER = PermissionLevel.USER
ADMIN = PermissionLevel.ADMIN


class DeliveryError(Exception):
    """Private message could not reach the recipient."""


class ChatChannel(Protocol):
    async def reply(self, text: str) -> None: ...

    async def send_private(self, text: str) -> None:
        """Raise DeliveryError when the recipient cannot be reached."""


@dataclass(frozen=True)
class InboundMessage:
    author_id: str
    author_name: str
    content: str
    guild_id: Optional[str] = None
    guild_name: str = ""
    role_ids: frozenset[str] = field(default_factory=frozenset)
    is_platform_admin: bool = False

    def requester(self) -> RequesterContext:
        return RequesterContext(
            identity=self.author_id,
            display_name=self.author_name,
            role_ids=self.role_ids,
            is_platform_admin=self.is_platform_admin,
        )


@dataclass(frozen=True)
class BotStatus:
    guild_count: int
    uptime: timedelta
    latency_ms: Optional[int] = None


@dataclass(frozen=True)
class Command:
    level: PermissionLevel
    usage: str
    description: str


COMMANDS: dict[str, Command] = {
    "help": Command(USER, "help", "Show this list of commands"),
    "generate": Command(USER, "generate <service>", "Get an account sent to you by DM"),
    "stock": Command(USER, "stock [service]", "Show available accounts per service"),
    "status": Command(USER, "status", "Show bot status"),
    "profile": Command(USER, "profile", "Show your generation stats"),
    "cooldown": Command(USER, "cooldown", "Show your remaining cooldowns"),
    "info": Command(USER, "info <service>", "Show details about a service"),
    "add": Command(ADMIN, "add <service> <email:password> [email:password ...]", "Add accounts to a service"),
    "remove": Command(ADMIN, "remove <service> <email>", "Remove an account from a service"),
    "restock": Command(ADMIN, "restock <account_id>", "Put a generated account back in stock"),
    "blacklist": Command(ADMIN, "blacklist <user_id> <reason>", "Stop a user from generating accounts"),
    "unblacklist": Command(ADMIN, "unblacklist <user_id>", "Lift a blacklist"),
    "setcooldown": Command(ADMIN, "setcooldown <minutes>", "Set this server's generation cooldown"),
}

# Permission for these is checked and logged by the engine
ENGINE_CHECKED = {"generate"}

MENTION_RE = re.compile(r"^<@!?(\d+)>$")

StatusProvider = Callable[[], BotStatus]
Handler = Callable[["CommandRouter", InboundMessage, ChatChannel, ScopeContext, list[str]], Awaitable[str]]


def format_duration(delta: timedelta) -> str:
    """Human readable h/m/s, rounded up to the next second."""
    total = int(delta.total_seconds())
    if delta.total_seconds() > total:
        total += 1
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def describe_error(error: ClaimError, prefix: str = "!") -> str:
    """User-facing text for an engine error result."""
    if isinstance(error, CategoryNotFound):
        return f"❌ **Service not found:** `{error.ref}` does not exist. Use `{prefix}stock` to list services."
    if isinstance(error, PermissionDenied):
        if error.reason == "blacklisted":
            return "⛔ **Blacklisted:** you are not allowed to generate accounts."
        return "❌ **Access denied!** You don't have permission to use this command."
    if isinstance(error, CooldownActive):
        return f"⏱️ **Cooldown active:** please wait `{format_duration(error.remaining)}` before generating again."
    if isinstance(error, StockExhausted):
        return (
            f"📉 **Out of stock:** no `{error.category}` accounts are available right now. "
            "Try again later or contact an administrator."
        )
    if isinstance(error, ValidationError):
        where = f"line {error.line_number}: " if error.line_number else ""
        return f"⚠️ **Invalid input:** {where}{error.reason}"
    if isinstance(error, NotFoundError):
        if error.account_id is None:
            return "❌ **Not found.**"
        return f"❌ **Not found:** account #{error.account_id} does not exist."
    if isinstance(error, DeliveryFailed):
        return (
            "❌ **DM error:** I couldn't send you a private message. "
            "Enable direct messages from server members and try again."
        )
    if isinstance(error, StorageFailure):
        return "⚠️ **System error:** something went wrong. Please try again later."
    return "⚠️ **Error:** the request could not be completed."


def _usage(prefix: str, name: str) -> str:
    return f"⚠️ **Wrong format.**\n**Usage:** `{prefix}{COMMANDS[name].usage}`"


def _parse_user_id(raw: str) -> Optional[str]:
    match = MENTION_RE.match(raw)
    if match:
        return match.group(1)
    return raw if raw.isdigit() else None


class CommandRouter:
    def __init__(self, engine: AllocationEngine, status_provider: Optional[StatusProvider] = None):
        self.engine = engine
        self.policy = engine.policy
        self.status_provider = status_provider

    async def dispatch(self, message: InboundMessage, channel: ChatChannel) -> bool:
        """Handle one message. Returns False when it was not a command for us."""
        content = message.content.strip()
        if not content:
            return False

        scope = await self.engine.resolve_scope(message.guild_id, message.guild_name)
        if isinstance(scope, StorageFailure):
            # Settings unknown; answer only what looks like a command
            if not content.startswith(config.DEFAULT_PREFIX):
                return False
            await channel.reply(describe_error(scope))
            return True

        prefix = scope.settings.prefix
        if not content.startswith(prefix):
            return False
        parts = content[len(prefix):].split()
        if not parts:
            return False
        name, args = parts[0].lower(), parts[1:]
        command = COMMANDS.get(name)
        if command is None:
            return False

        requester = message.requester()
        if name not in ENGINE_CHECKED and not self.policy.is_allowed(requester, scope, command.level):
            logger.info("Denied %s%s for %s", prefix, name, requester.identity)
            await channel.reply(describe_error(PermissionDenied()))
            return True

        handler: Handler = getattr(CommandRouter, f"_cmd_{name}")
        reply = await handler(self, message, channel, scope, args)
        await channel.reply(reply)
        return True

    # --- user commands ---

    async def _cmd_help(self, message, channel, scope, args) -> str:
        prefix = scope.settings.prefix
        requester = message.requester()
        lines = ["📖 **Commands**"]
        for name, command in COMMANDS.items():
            if command.level == ADMIN and not self.policy.is_allowed(requester, scope, ADMIN):
                continue
            lines.append(f"`{prefix}{command.usage}` - {command.description}")
        return "\n".join(lines)

    async def _cmd_generate(self, message, channel, scope, args) -> str:
        prefix = scope.settings.prefix
        if not args:
            return _usage(prefix, "generate")
        service = " ".join(args)
        result = await self.engine.claim(message.requester(), service, scope)
        if isinstance(result, ClaimError):
            return describe_error(result, prefix)

        account: Account = result
        try:
            await channel.send_private(self._credentials_text(service, account))
        except DeliveryError as e:
            logger.warning("Could not DM account %s to %s: %s", account.id, message.author_id, e)
            released = await self.engine.release(account.id, reason=f"direct message to {message.author_id} failed")
            if isinstance(released, ClaimError):
                logger.error("Release of account %s after failed delivery returned %s", account.id, released.kind)
            return describe_error(DeliveryFailed(account.id, str(e)), prefix)
        return f"✅ **Success!** A `{service}` account has been sent to your DMs."

    @staticmethod
    def _credentials_text(service: str, account: Account) -> str:
        lines = [
            f"🎁 **Your {service} account**",
            f"📧 **Email:** `{account.email}`",
            f"🔑 **Password:** `{account.password}`",
        ]
        if account.expires_at:
            lines.append(f"⌛ **Expires:** {account.expires_at:%Y-%m-%d %H:%M} UTC")
        lines.append("Please don't share these credentials.")
        return "\n".join(lines)

    async def _cmd_stock(self, message, channel, scope, args) -> str:
        result = await self.engine.stock(" ".join(args) if args else None)
        if isinstance(result, ClaimError):
            return describe_error(result, scope.settings.prefix)
        if not result:
            return "📦 **Stock:** no services have been set up yet."
        lines = ["📦 **Stock**"]
        for count in result:
            marker = "🟢" if count.available else "🔴"
            lines.append(f"{marker} `{count.name}`: {count.available} available / {count.total} total")
        return "\n".join(lines)

    async def _cmd_status(self, message, channel, scope, args) -> str:
        lines = ["🤖 **Bot status:** online"]
        if self.status_provider:
            status = self.status_provider()
            lines.append(f"🌐 **Servers:** {status.guild_count}")
            lines.append(f"⏳ **Uptime:** {format_duration(status.uptime)}")
            if status.latency_ms is not None:
                lines.append(f"📶 **Latency:** {status.latency_ms} ms")
        counts = await self.engine.stock()
        if isinstance(counts, ClaimError):
            return describe_error(counts)
        lines.append(f"📦 **Available accounts:** {sum(c.available for c in counts)}")
        lines.append(f"⏱️ **Cooldown here:** {format_duration(timedelta(seconds=scope.settings.cooldown_seconds))}")
        return "\n".join(lines)

    async def _cmd_profile(self, message, channel, scope, args) -> str:
        profile = await self.engine.profile(message.requester(), scope)
        if isinstance(profile, ClaimError):
            return describe_error(profile)
        return self._profile_text(profile)

    @staticmethod
    def _profile_text(profile: Profile) -> str:
        lines = [
            f"👤 **Profile of {profile.display_name}**",
            f"🎁 **Accounts held:** {profile.generated_count}",
        ]
        if profile.blacklisted:
            lines.append("⛔ **Blacklisted**")
        if profile.cooldowns:
            lines.append("⏱️ **Cooldowns:**")
            lines.extend(f"- `{name}`: {format_duration(left)}" for name, left in sorted(profile.cooldowns.items()))
        else:
            lines.append("⏱️ No active cooldowns.")
        return "\n".join(lines)

    async def _cmd_cooldown(self, message, channel, scope, args) -> str:
        profile = await self.engine.profile(message.requester(), scope)
        if isinstance(profile, ClaimError):
            return describe_error(profile)
        if not profile.cooldowns:
            return "⏱️ **Cooldown over!** You can generate a new account right now."
        lines = ["⏱️ **Remaining cooldowns:**"]
        lines.extend(f"- `{name}`: {format_duration(left)}" for name, left in sorted(profile.cooldowns.items()))
        return "\n".join(lines)

    async def _cmd_info(self, message, channel, scope, args) -> str:
        prefix = scope.settings.prefix
        if not args:
            return _usage(prefix, "info")
        result = await self.engine.stock(" ".join(args))
        if isinstance(result, ClaimError):
            return describe_error(result, prefix)
        count = result[0]
        category = await self.engine.get_category(count.category_id)
        if isinstance(category, ClaimError):
            return describe_error(category, prefix)
        description = category.description or "No description."
        return "\n".join(
            [
                f"ℹ️ **{count.name}**",
                description,
                f"📦 **Available:** {count.available} / {count.total}",
                f"⏱️ **Cooldown:** {format_duration(timedelta(seconds=scope.settings.cooldown_seconds))}",
                f"Use `{prefix}generate {count.name}` to get one.",
            ]
        )

    # --- admin commands ---

    async def _cmd_add(self, message, channel, scope, args) -> str:
        prefix = scope.settings.prefix
        if len(args) < 2:
            return _usage(prefix, "add")
        service, lines = args[0], args[1:]
        result = await self.engine.add_from_text(
            "\n".join(lines), service, message.requester(), scope, create_category=True
        )
        if isinstance(result, ClaimError):
            return describe_error(result, prefix)
        return f"✅ **Accounts added:** {len(result)} `{service}` account(s) added."

    async def _cmd_remove(self, message, channel, scope, args) -> str:
        prefix = scope.settings.prefix
        if len(args) != 2:
            return _usage(prefix, "remove")
        service, email = args
        result = await self.engine.remove(service, email, message.requester(), scope)
        if isinstance(result, ClaimError):
            return describe_error(result, prefix)
        if not result:
            return f"❌ **Account not found:** no account `{email}` in `{service}`."
        return f"✅ **Account removed:** `{email}` was removed from `{service}`."

    async def _cmd_restock(self, message, channel, scope, args) -> str:
        prefix = scope.settings.prefix
        if len(args) != 1 or not args[0].lstrip("#").isdigit():
            return _usage(prefix, "restock")
        account_id = int(args[0].lstrip("#"))
        result = await self.engine.restock(account_id, message.requester(), scope)
        if isinstance(result, ClaimError):
            return describe_error(result, prefix)
        return f"♻️ **Restocked:** account #{account_id} is available again."

    async def _cmd_blacklist(self, message, channel, scope, args) -> str:
        prefix = scope.settings.prefix
        target = _parse_user_id(args[0]) if args else None
        if target is None or len(args) < 2:
            return _usage(prefix, "blacklist")
        reason = " ".join(args[1:])
        result = await self.engine.blacklist(target, reason, message.requester(), scope)
        if isinstance(result, ClaimError):
            return describe_error(result, prefix)
        return f"✅ **User blacklisted:** `{target}` can no longer generate accounts.\n📝 **Reason:** {reason}"

    async def _cmd_unblacklist(self, message, channel, scope, args) -> str:
        prefix = scope.settings.prefix
        target = _parse_user_id(args[0]) if len(args) == 1 else None
        if target is None:
            return _usage(prefix, "unblacklist")
        result = await self.engine.unblacklist(target, message.requester(), scope)
        if isinstance(result, ClaimError):
            return describe_error(result, prefix)
        if not result:
            return f"ℹ️ `{target}` was not blacklisted."
        return f"✅ **Blacklist lifted:** `{target}` can generate accounts again."

    async def _cmd_setcooldown(self, message, channel, scope, args) -> str:
        prefix = scope.settings.prefix
        if len(args) != 1 or not args[0].isdigit() or int(args[0]) <= 0:
            return _usage(prefix, "setcooldown")
        minutes = int(args[0])
        result = await self.engine.set_cooldown(minutes, message.requester(), scope)
        if isinstance(result, ClaimError):
            return describe_error(result, prefix)
        return f"✅ **Cooldown updated:** generations are now limited to one every `{minutes} minutes`."
