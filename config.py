"""Configuration for the Stockroom bot and dashboard."""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Discord
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN", "")
DISCORD_OWNER_ID = os.getenv("DISCORD_OWNER_ID", "")  # Allowed to run admin commands in DMs

# Web -> Bot internal API (status check for the dashboard)
BOT_INTERNAL_URL = os.getenv("BOT_INTERNAL_URL", "http://bot:8001")
INTERNAL_API_SECRET = os.getenv("INTERNAL_API_SECRET", "")  # Shared secret for web->bot requests
INTERNAL_API_PORT = int(os.getenv("INTERNAL_API_PORT", "8001"))

# Database
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(__file__).parent / 'stockroom.db'}",
)

# Inventory backend: "sql" (DATABASE_URL) or "memory" (process-local, for demos)
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "sql").strip().lower()

# Defaults for guilds seen for the first time
DEFAULT_PREFIX = os.getenv("DEFAULT_PREFIX", "!")
DEFAULT_COOLDOWN_SECONDS = int(os.getenv("DEFAULT_COOLDOWN_SECONDS", "3600"))
COOLDOWN_PURGE_MINUTES = int(os.getenv("COOLDOWN_PURGE_MINUTES", "60"))  # Stale cooldown row sweep interval

# Web auth (JWT secret, initial admin bootstrap)
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production-use-long-random-string")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = 7
INITIAL_ADMIN_USERNAME = os.getenv("INITIAL_ADMIN_USERNAME", "admin")
INITIAL_ADMIN_PASSWORD = os.getenv("INITIAL_ADMIN_PASSWORD", "")  # Set to bootstrap first admin
