"""
Activity feed shown on the operations dashboard.

Observability only: entries are capped and lost on restart, and nothing in
the conversation logic reads them back.
"""

import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

ACTIVITY_TYPES = ("question", "order", "message", "code_delivery", "error", "human")


@dataclass(frozen=True)
class ActivityEntry:
    id: str
    type: str
    message: str
    details: Optional[str]
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


class ActivityLog:
    def __init__(self, maxlen: int = 200):
        self._entries: deque = deque(maxlen=maxlen)

    def record(self, type: str, message: str, details: Optional[str] = None) -> ActivityEntry:
        if type not in ACTIVITY_TYPES:
            logger.warning(f"Unknown activity type: {type}")
        entry = ActivityEntry(
            id=uuid.uuid4().hex[:12],
            type=type,
            message=message,
            details=details,
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )
        self._entries.appendleft(entry)
        logger.info(message, extra={"activity_type": type, "details": details})
        return entry

    def recent(self, limit: int = 50) -> list[ActivityEntry]:
        return list(self._entries)[:limit]

    def count(self, type: str) -> int:
        return sum(1 for entry in self._entries if entry.type == type)
