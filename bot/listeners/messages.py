"""Prefix command listener: adapts Discord messages to the command router."""
from __future__ import annotations

import logging

import discord
from discord.ext import commands

from bot.models import LogType
from bot.services.command_router import CommandRouter, DeliveryError, InboundMessage
from bot.services.inventory_store import StoreError

logger = logging.getLogger("stockroom.messages")


def _get_role_ids(member: discord.Member) -> frozenset[str]:
    """Member's role IDs as strings. Reads raw _roles too, since member.roles drops
    IDs missing from the guild role cache."""
    ids = set()
    raw = getattr(member, "_roles", None)
    if raw is not None:
        ids.update(str(r) for r in raw)
    for r in member.roles:
        ids.add(str(r.id))
    return frozenset(ids)


def to_inbound(message: discord.Message) -> InboundMessage:
    """Build the transport-neutral view of a Discord message."""
    author = message.author
    guild = message.guild
    member = author if isinstance(author, discord.Member) else None
    return InboundMessage(
        author_id=str(author.id),
        author_name=getattr(author, "display_name", None) or str(author),
        content=message.content or "",
        guild_id=str(guild.id) if guild else None,
        guild_name=guild.name if guild else "",
        role_ids=_get_role_ids(member) if member else frozenset(),
        is_platform_admin=bool(member and member.guild_permissions.administrator),
    )


class DiscordChannel:
    """ChatChannel over a Discord message: reply in place, DM the author."""

    def __init__(self, message: discord.Message):
        self._message = message

    async def reply(self, text: str) -> None:
        await self._message.reply(text, mention_author=False)

    async def send_private(self, text: str) -> None:
        try:
            await self._message.author.send(text)
        except (discord.Forbidden, discord.HTTPException) as e:
            raise DeliveryError(str(e)) from e


async def _handle_message(message: discord.Message, bot: commands.Bot, router: CommandRouter) -> None:
    if message.author.bot or (bot.user and message.author.id == bot.user.id):
        return
    channel = DiscordChannel(message)
    try:
        await router.dispatch(to_inbound(message), channel)
    except Exception as e:
        logger.exception("Command error: %s", e)
        try:
            await router.engine.activity.record(
                LogType.ERROR,
                "BOT_ERROR",
                f"Error handling message from {message.author.id}: {e}",
            )
        except StoreError:
            logger.error("Could not record BOT_ERROR")
        try:
            await channel.reply("⚠️ **System error:** something went wrong. Please try again later.")
        except discord.HTTPException:
            pass


def setup(bot: commands.Bot, router: CommandRouter) -> None:
    """Register the on_message listener."""

    async def on_message(message: discord.Message) -> None:
        await _handle_message(message, bot, router)

    bot.add_listener(on_message, "on_message")
