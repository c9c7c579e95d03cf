"""
Conversation state stores.

The engine is handed a store explicitly. Both implementations keep an
append-only event list per sale and return records by folding it, so
swapping the volatile store for the durable one changes nothing else.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional, Protocol

from sqlalchemy.orm import sessionmaker

from giftbot.conversation import EventType, SaleEvent, SaleRecord, fold_events
from giftbot.storage import SessionLocal, append_sale_event, get_sale_events, list_sale_ids

logger = logging.getLogger(__name__)


class StateStore(Protocol):
    async def load(self, sale_id: str) -> Optional[SaleRecord]:
        ...

    async def append(self, sale_id: str, event: SaleEvent) -> SaleRecord:
        ...

    async def append_once(self, sale_id: str, event: SaleEvent, key: str) -> Optional[SaleRecord]:
        ...

    async def records(self, limit: int = 100) -> list[SaleRecord]:
        ...


class MemoryStateStore:
    """Process-local store. Empty after every cold start."""

    def __init__(self):
        self._events: dict[str, list[SaleEvent]] = {}
        self._keys: dict[str, set[str]] = {}

    async def load(self, sale_id: str) -> Optional[SaleRecord]:
        return fold_events(sale_id, self._events.get(sale_id, []))

    async def append(self, sale_id: str, event: SaleEvent) -> SaleRecord:
        self._events.setdefault(sale_id, []).append(event)
        return fold_events(sale_id, self._events[sale_id])

    async def append_once(self, sale_id: str, event: SaleEvent, key: str) -> Optional[SaleRecord]:
        """Append unless the key was already used for this sale; None if it was."""
        keys = self._keys.setdefault(sale_id, set())
        if key in keys:
            return None
        keys.add(key)
        return await self.append(sale_id, event)

    async def records(self, limit: int = 100) -> list[SaleRecord]:
        records = [fold_events(sale_id, events) for sale_id, events in self._events.items()]
        records.sort(key=lambda r: r.updated_at or "", reverse=True)
        return records[:limit]


class SqlStateStore:
    """Durable event log in the sale_events table."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def _load_events(self, sale_id: str) -> list[SaleEvent]:
        with self._session_factory() as db:
            rows = get_sale_events(db, sale_id)
            return [
                SaleEvent(
                    type=EventType(row.event_type),
                    data=json.loads(row.payload or "{}"),
                    at=row.created_at,
                )
                for row in rows
            ]

    def _append(self, sale_id: str, event: SaleEvent, key: Optional[str] = None) -> bool:
        with self._session_factory() as db:
            row = append_sale_event(db, sale_id, event.type.value, event.data, event.at, dedupe_key=key)
            return row is not None

    def _sale_ids(self, limit: int) -> list[str]:
        with self._session_factory() as db:
            return list_sale_ids(db, limit)

    async def load(self, sale_id: str) -> Optional[SaleRecord]:
        events = await asyncio.to_thread(self._load_events, sale_id)
        return fold_events(sale_id, events)

    async def append(self, sale_id: str, event: SaleEvent) -> SaleRecord:
        await asyncio.to_thread(self._append, sale_id, event)
        logger.debug(f"Appended {event.type.value} to sale {sale_id}")
        return await self.load(sale_id)

    async def append_once(self, sale_id: str, event: SaleEvent, key: str) -> Optional[SaleRecord]:
        """
        Append unless an event with the same key is already stored for the
        sale. The unique (sale_id, dedupe_key) constraint decides between
        concurrent callers. Returns None for the loser.
        """
        if not await asyncio.to_thread(self._append, sale_id, event, key):
            return None
        return await self.load(sale_id)

    async def records(self, limit: int = 100) -> list[SaleRecord]:
        sale_ids = await asyncio.to_thread(self._sale_ids, limit)
        records = []
        for sale_id in sale_ids:
            record = await self.load(sale_id)
            if record is not None:
                records.append(record)
        return records
