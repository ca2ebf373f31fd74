"""Main bot entry point."""
import logging
from datetime import datetime, timezone

import discord
from discord.ext import commands, tasks

import config
from bot.http_server import start_http_server
from bot.listeners import messages
from bot.models import init_db
from bot.services.allocation import AllocationEngine
from bot.services.command_router import BotStatus, CommandRouter
from bot.services.inventory_store import create_store
from bot.services.results import StorageFailure

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("stockroom")

intents = discord.Intents.default()
intents.message_content = True  # Prefix commands; enable in Developer Portal → Bot → Message Content Intent
intents.members = True  # Member roles for permission checks


class StockroomBot(commands.Bot):
    """Stockroom Discord bot."""

    def __init__(self):
        super().__init__(
            command_prefix=commands.when_mentioned,  # Prefix commands are handled by the router
            intents=intents,
            help_command=None,
        )
        self.started_at = datetime.now(timezone.utc)
        self.engine = AllocationEngine(create_store())
        self.router = CommandRouter(self.engine, status_provider=self.status)
        self._http_runner = None

    def status(self) -> BotStatus:
        latency = self.latency
        return BotStatus(
            guild_count=len(self.guilds),
            uptime=datetime.now(timezone.utc) - self.started_at,
            latency_ms=int(latency * 1000) if latency == latency else None,  # NaN before the first heartbeat
        )

    @tasks.loop(minutes=config.COOLDOWN_PURGE_MINUTES)
    async def sweep_cooldowns(self) -> None:
        """Drop cooldown rows no scope can still be waiting on."""
        removed = await self.engine.purge_stale_cooldowns()
        if isinstance(removed, StorageFailure):
            logger.warning("Cooldown sweep failed: %s", removed.detail)

    async def on_ready(self) -> None:
        logger.info("Bot ready: %s (ID: %s) in %d guild(s)", self.user, self.user.id if self.user else "?", len(self.guilds))

    async def setup_hook(self) -> None:
        """Setup before connecting to the gateway."""
        if config.STORAGE_BACKEND == "sql":
            await init_db()
        messages.setup(self, self.router)
        self._http_runner = await start_http_server(self)
        self.sweep_cooldowns.start()

    async def close(self) -> None:
        """Cleanup on shutdown."""
        self.sweep_cooldowns.cancel()
        if self._http_runner:
            await self._http_runner.cleanup()
        await super().close()


def main() -> None:
    """Run the bot."""
    if not config.DISCORD_TOKEN:
        raise ValueError("DISCORD_TOKEN is required")
    if not config.DISCORD_OWNER_ID:
        logger.warning("DISCORD_OWNER_ID not set - admin commands will not work in DMs")

    bot = StockroomBot()
    bot.run(config.DISCORD_TOKEN)


if __name__ == "__main__":
    main()
