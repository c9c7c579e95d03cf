"""
Sale conversation record and the event fold that builds it.

A sale's record is never written directly. Every change is an appended
SaleEvent, and the record is the fold of those events in order. The fold
enforces the record's invariants:

- status only moves forward (see STATUS_RANK); an event that would move it
  back is ignored
- code_delivered is assigned once and never changes
- resend attempts only count while the code is out
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)


class ConversationStatus(str, Enum):
    NO_CONTACT = "no_contact"
    WELCOME_SENT = "welcome_sent"
    INSTRUCTIONS_SENT = "instructions_sent"
    CODE_SENT = "code_sent"
    CANCELLED = "cancelled"
    HUMAN_ESCALATED = "human_escalated"


STATUS_RANK = {
    ConversationStatus.NO_CONTACT: 0,
    ConversationStatus.WELCOME_SENT: 1,
    ConversationStatus.INSTRUCTIONS_SENT: 2,
    ConversationStatus.CODE_SENT: 3,
    ConversationStatus.CANCELLED: 3,
    ConversationStatus.HUMAN_ESCALATED: 4,
}

TERMINAL_STATUSES = frozenset({
    ConversationStatus.CODE_SENT,
    ConversationStatus.CANCELLED,
    ConversationStatus.HUMAN_ESCALATED,
})

# Statuses in which the engine stops replying altogether
SILENT_STATUSES = frozenset({
    ConversationStatus.CANCELLED,
    ConversationStatus.HUMAN_ESCALATED,
})


def can_transition(src: ConversationStatus, dst: ConversationStatus) -> bool:
    """
    Whether a sale may move from src to dst.

    Staying put is always allowed. CODE_SENT may only be left for
    HUMAN_ESCALATED; CANCELLED and HUMAN_ESCALATED are never left.
    """
    if src == dst:
        return True
    if src in SILENT_STATUSES:
        return False
    if src == ConversationStatus.CODE_SENT:
        return dst == ConversationStatus.HUMAN_ESCALATED
    return STATUS_RANK[dst] > STATUS_RANK[src]


class EventType(str, Enum):
    SALE_REGISTERED = "sale_registered"
    RECONSTRUCTED = "reconstructed"
    BUYER_MESSAGE = "buyer_message"
    WELCOME_SENT = "welcome_sent"
    INSTRUCTIONS_SENT = "instructions_sent"
    CODE_ASSIGNED = "code_assigned"
    CODE_SENT = "code_sent"
    CODE_RESENT = "code_resent"
    CANCELLED = "cancelled"
    ESCALATED = "escalated"


# Events whose only effect is a status change
_STATUS_EVENTS = {
    EventType.WELCOME_SENT: ConversationStatus.WELCOME_SENT,
    EventType.INSTRUCTIONS_SENT: ConversationStatus.INSTRUCTIONS_SENT,
    EventType.CODE_SENT: ConversationStatus.CODE_SENT,
    EventType.CANCELLED: ConversationStatus.CANCELLED,
    EventType.ESCALATED: ConversationStatus.HUMAN_ESCALATED,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class SaleEvent:
    type: EventType
    data: dict = field(default_factory=dict)
    at: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class SaleRecord:
    sale_id: str
    order_id: Optional[str] = None
    seller_id: Optional[str] = None
    buyer_id: Optional[str] = None
    product_key: Optional[str] = None
    product_title: str = ""
    status: ConversationStatus = ConversationStatus.NO_CONTACT
    code_delivered: Optional[str] = None
    last_buyer_message_hash: Optional[str] = None
    last_buyer_message: Optional[str] = None
    resend_attempts: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "sale_id": self.sale_id,
            "order_id": self.order_id,
            "seller_id": self.seller_id,
            "buyer_id": self.buyer_id,
            "product_key": self.product_key,
            "product_title": self.product_title,
            "status": self.status.value,
            "code_delivered": self.code_delivered is not None,
            "resend_attempts": self.resend_attempts,
            "last_buyer_message": self.last_buyer_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


_IDENTITY_FIELDS = ("order_id", "seller_id", "buyer_id", "product_key", "product_title")


def _fill_identity(record: SaleRecord, data: dict) -> SaleRecord:
    """Copy identity fields the record does not know yet."""
    updates = {}
    for name in _IDENTITY_FIELDS:
        value = data.get(name)
        if value and not getattr(record, name):
            updates[name] = value
    return replace(record, **updates) if updates else record


def _move(record: SaleRecord, status: ConversationStatus) -> SaleRecord:
    if not can_transition(record.status, status):
        logger.debug(
            f"Ignoring transition {record.status.value} -> {status.value} for sale {record.sale_id}"
        )
        return record
    return replace(record, status=status)


def _assign_code(record: SaleRecord, code: Optional[str]) -> SaleRecord:
    if not code:
        return record
    if record.code_delivered is None:
        return replace(record, code_delivered=code)
    if record.code_delivered != code:
        logger.error(f"Refusing to replace delivered code on sale {record.sale_id}")
    return record


def apply_event(record: SaleRecord, event: SaleEvent) -> SaleRecord:
    """Apply one event to a record. Pure."""
    data = event.data
    if record.created_at is None:
        record = replace(record, created_at=event.at)

    if event.type in (EventType.SALE_REGISTERED, EventType.RECONSTRUCTED):
        record = _fill_identity(record, data)
        if data.get("status"):
            record = _move(record, ConversationStatus(data["status"]))
        record = _assign_code(record, data.get("code"))
        if data.get("resend_attempts", 0) > record.resend_attempts:
            record = replace(record, resend_attempts=data["resend_attempts"])

    elif event.type == EventType.BUYER_MESSAGE:
        record = replace(
            record,
            last_buyer_message_hash=data.get("hash"),
            last_buyer_message=data.get("text"),
        )

    elif event.type == EventType.CODE_ASSIGNED:
        record = _assign_code(record, data.get("code"))

    elif event.type == EventType.CODE_RESENT:
        if record.status == ConversationStatus.CODE_SENT:
            record = replace(record, resend_attempts=record.resend_attempts + 1)

    elif event.type in _STATUS_EVENTS:
        if event.type == EventType.CODE_SENT:
            record = _assign_code(record, data.get("code"))
            if record.code_delivered is None:
                logger.error(f"CODE_SENT without a code on sale {record.sale_id}")
                return replace(record, updated_at=event.at)
        record = _move(record, _STATUS_EVENTS[event.type])

    return replace(record, updated_at=event.at)


def fold_events(sale_id: str, events: Iterable[SaleEvent]) -> Optional[SaleRecord]:
    """
    Build a record from a sale's event log.

    Returns None for an empty log.
    """
    record = None
    for event in events:
        if record is None:
            record = SaleRecord(sale_id=sale_id)
        record = apply_event(record, event)
    return record
