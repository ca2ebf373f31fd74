"""Internal HTTP server the dashboard uses to check on the bot."""
from __future__ import annotations

import logging
from datetime import datetime, timezone

import aiohttp.web

import config

logger = logging.getLogger("stockroom.http")


def _authorized(request: aiohttp.web.Request) -> bool:
    return request.headers.get("Authorization") == f"Bearer {config.INTERNAL_API_SECRET}"


async def _handle_status(request: aiohttp.web.Request) -> aiohttp.web.Response:
    """GET /internal/status - online flag, guild count and uptime."""
    if not config.INTERNAL_API_SECRET:
        logger.warning("INTERNAL_API_SECRET not set - rejecting status check")
        return aiohttp.web.json_response({"error": "Internal API not configured"}, status=503)
    if not _authorized(request):
        return aiohttp.web.json_response({"error": "Unauthorized"}, status=401)

    bot = request.app["bot"]
    started_at: datetime = request.app["started_at"]
    uptime = (datetime.now(timezone.utc) - started_at).total_seconds()
    return aiohttp.web.json_response(
        {
            "online": bot.is_ready() and not bot.is_closed(),
            "guilds": len(bot.guilds),
            "uptime_seconds": int(uptime),
        }
    )


def create_app(bot, started_at: datetime | None = None) -> aiohttp.web.Application:
    """Create aiohttp app with bot reference."""
    app = aiohttp.web.Application()
    app["bot"] = bot
    app["started_at"] = started_at or datetime.now(timezone.utc)
    app.router.add_get("/internal/status", _handle_status)
    return app


async def start_http_server(bot, host: str = "0.0.0.0", port: int | None = None) -> aiohttp.web.AppRunner | None:
    """Start the internal HTTP server (run alongside the bot). Returns the runner for cleanup."""
    if not config.INTERNAL_API_SECRET:
        logger.info("INTERNAL_API_SECRET not set - skipping internal HTTP server")
        return None
    port = port or config.INTERNAL_API_PORT
    app = create_app(bot, getattr(bot, "started_at", None))
    runner = aiohttp.web.AppRunner(app)
    await runner.setup()
    site = aiohttp.web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Internal HTTP server listening on %s:%d", host, port)
    return runner
