"""
Inventory source used by code delivery.

The engine never reads and then writes an inventory row itself; it asks the
source to claim one, and the source guarantees a row is handed out once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy.orm import sessionmaker

from giftbot.errors import InventoryError
from giftbot.storage import (
    SessionLocal,
    draw_available_code,
    find_code_for_order,
    mark_code_delivered,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DrawnCode:
    code: str
    row_ref: int
    status: str = "reserved"


class InventorySource(Protocol):
    async def draw_available_code(self, product_key: str, order_id: Optional[str] = None) -> Optional[DrawnCode]:
        ...

    async def mark_delivered(self, row_ref: int, order_id: str) -> None:
        ...

    async def code_for_order(self, order_id: str) -> Optional[DrawnCode]:
        ...


class SqlInventorySource:
    """Inventory backed by the inventory_codes table."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def _draw(self, product_key: str, order_id: Optional[str]) -> Optional[DrawnCode]:
        with self._session_factory() as db:
            row = draw_available_code(db, product_key, order_id=order_id)
            if row is None:
                return None
            return DrawnCode(code=row.code, row_ref=row.id, status=row.status)

    def _mark(self, row_ref: int, order_id: str) -> bool:
        with self._session_factory() as db:
            return mark_code_delivered(db, row_ref, order_id)

    def _lookup(self, order_id: str) -> Optional[DrawnCode]:
        with self._session_factory() as db:
            row = find_code_for_order(db, order_id)
            if row is None:
                return None
            return DrawnCode(code=row.code, row_ref=row.id, status=row.status)

    async def draw_available_code(self, product_key: str, order_id: Optional[str] = None) -> Optional[DrawnCode]:
        try:
            return await asyncio.to_thread(self._draw, product_key, order_id)
        except Exception as e:
            raise InventoryError(f"Drawing a {product_key} code failed: {e}") from e

    async def mark_delivered(self, row_ref: int, order_id: str) -> None:
        try:
            marked = await asyncio.to_thread(self._mark, row_ref, order_id)
        except Exception as e:
            raise InventoryError(f"Marking inventory row {row_ref} failed: {e}") from e
        if not marked:
            raise InventoryError(f"Inventory row {row_ref} could not be marked for order {order_id}")

    async def code_for_order(self, order_id: str) -> Optional[DrawnCode]:
        try:
            return await asyncio.to_thread(self._lookup, order_id)
        except Exception as e:
            raise InventoryError(f"Looking up the code for order {order_id} failed: {e}") from e
