"""Activity log: append-only audit trail read by the dashboard and the bot."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from bot.models import LogEntry, LogType
from bot.services.inventory_store import InventoryStore
from bot.services.policy import Clock, utcnow

logger = logging.getLogger("stockroom.activity")


@dataclass(frozen=True)
class ActivityItem:
    """Dashboard feed row."""

    id: int
    type: str
    title: str
    message: str
    timestamp: datetime


def _as_activity(entry: LogEntry) -> ActivityItem:
    kind = entry.type if entry.type in {t.value for t in LogType} else LogType.INFO.value
    return ActivityItem(
        id=entry.id,
        type=kind,
        title=entry.action,
        message=entry.message,
        timestamp=entry.created_at,
    )


class ActivityLog:
    def __init__(self, store: InventoryStore, clock: Clock = utcnow):
        self._store = store
        self._clock = clock

    async def record(
        self,
        type: LogType | str,
        action: str,
        message: str,
        user_id: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LogEntry:
        type_value = type.value if isinstance(type, LogType) else type
        entry = await self._store.append_log(
            type=type_value,
            action=action,
            message=message,
            now=self._clock(),
            user_id=user_id,
            metadata=json.dumps(metadata, default=str) if metadata else None,
        )
        logger.debug("[%s] %s: %s", type_value, action, message)
        return entry

    async def list_recent_activity(self, limit: int = 10) -> list[ActivityItem]:
        return [_as_activity(e) for e in await self._store.list_logs(limit)]

    async def list_logs(self, limit: Optional[int] = None) -> list[LogEntry]:
        return await self._store.list_logs(limit)
