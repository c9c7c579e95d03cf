"""
Rebuild a sale's conversation record from the marketplace message history.

Used when the state store has nothing for a sale (first contact after a cold
start, or a sale that predates the event log) and to catch a cached record
up when another invocation has already moved the conversation forward.

Classification looks only at the seller's own messages and matches the
marker phrases of the templates in giftbot.products.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from giftbot.conversation import (
    STATUS_RANK,
    ConversationStatus,
    EventType,
    SaleEvent,
    SaleRecord,
    can_transition,
)
from giftbot.errors import InventoryError, MarketplaceError
from giftbot.inventory import InventorySource
from giftbot.marketplace import MarketplaceClient
from giftbot.products import (
    CANCEL_MARKER,
    CODE_MARKER,
    ESCALATION_MARKERS,
    INSTRUCTIONS_MARKERS,
    WELCOME_MARKERS,
    detect_product,
    extract_code,
)
from giftbot.schemas import Order, PackMessage, sort_messages
from giftbot.state_store import StateStore
from giftbot.utils import normalize_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryClassification:
    status: ConversationStatus
    code: Optional[str] = None
    resend_attempts: int = 0


def _is_seller(message: PackMessage, seller_id: str) -> bool:
    return message.from_user_id is not None and str(message.from_user_id) == str(seller_id)


def classify_history(messages: Sequence[PackMessage], seller_id: str) -> HistoryClassification:
    """
    Infer the conversation status from the seller's earlier messages.

    Priority: code message, escalation, cancellation, instructions, anything
    else the seller wrote. An escalation sent after the last code message
    wins over the code.
    """
    seller_messages = [m for m in sort_messages(list(messages)) if _is_seller(m, seller_id)]
    if not seller_messages:
        return HistoryClassification(ConversationStatus.NO_CONTACT)

    texts = [normalize_text(m.text) for m in seller_messages]

    code_positions = [i for i, text in enumerate(texts) if CODE_MARKER in text]
    if code_positions:
        code = None
        for position in code_positions:
            code = extract_code(seller_messages[position].text)
            if code:
                break
        after_code = texts[code_positions[-1] + 1:]
        escalated = any(marker in text for text in after_code for marker in ESCALATION_MARKERS)
        return HistoryClassification(
            ConversationStatus.HUMAN_ESCALATED if escalated else ConversationStatus.CODE_SENT,
            code=code,
            resend_attempts=len(code_positions) - 1,
        )

    everything = " ".join(texts)
    if any(marker in everything for marker in ESCALATION_MARKERS):
        return HistoryClassification(ConversationStatus.HUMAN_ESCALATED)
    if CANCEL_MARKER in everything:
        return HistoryClassification(ConversationStatus.CANCELLED)
    if all(marker in everything for marker in INSTRUCTIONS_MARKERS):
        return HistoryClassification(ConversationStatus.INSTRUCTIONS_SENT)
    if any(marker in everything for marker in WELCOME_MARKERS):
        return HistoryClassification(ConversationStatus.WELCOME_SENT)
    return HistoryClassification(ConversationStatus.WELCOME_SENT)


class ConversationReconstructor:
    def __init__(
        self,
        marketplace: MarketplaceClient,
        store: StateStore,
        inventory: Optional[InventorySource] = None,
    ):
        self._marketplace = marketplace
        self._store = store
        self._inventory = inventory

    async def _recover_code(self, order_id: Optional[str]) -> Optional[str]:
        if not order_id or self._inventory is None:
            return None
        try:
            drawn = await self._inventory.code_for_order(order_id)
        except InventoryError as e:
            logger.warning(f"Inventory lookup during reconstruction failed: {e}")
            return None
        return drawn.code if drawn else None

    async def reconstruct(
        self,
        sale_id: str,
        seller_id: str,
        order: Optional[Order] = None,
        messages: Optional[Sequence[PackMessage]] = None,
    ) -> SaleRecord:
        """
        Build and store a record for a sale with no usable cached state.

        Raises MarketplaceError when the sale's order cannot be resolved.
        """
        if order is None:
            order = await self._marketplace.get_sale_order(sale_id)
            if order is None:
                raise MarketplaceError(f"No order found for sale {sale_id}")

        product = detect_product(order.item_title)
        if product is None:
            logger.warning(f"Unknown product for sale {sale_id}: {order.item_title!r}")

        if messages is None:
            messages = await self._marketplace.get_pack_messages(sale_id, seller_id)

        history = classify_history(messages, seller_id)
        code = history.code
        if code is None:
            code = await self._recover_code(order.id)
            if code:
                logger.info(f"Restored delivered code for sale {sale_id} from inventory")

        data = {
            "order_id": order.id,
            "seller_id": str(seller_id),
            "buyer_id": order.buyer_id,
            "product_key": product.key if product else None,
            "product_title": order.item_title,
            "status": history.status.value,
            "resend_attempts": history.resend_attempts,
        }
        if code:
            data["code"] = code

        record = await self._store.append(sale_id, SaleEvent(EventType.RECONSTRUCTED, data))
        logger.info(f"Reconstructed sale {sale_id} as {record.status.value}")
        return record

    async def reconcile(self, record: SaleRecord, messages: Sequence[PackMessage]) -> SaleRecord:
        """
        Catch a cached record up with the message history.

        Only moves forward: a history that looks behind the record (for
        example a failed send) leaves it as it is.
        """
        if not record.seller_id:
            return record
        history = classify_history(messages, record.seller_id)
        ahead = (
            history.status != record.status
            and STATUS_RANK[history.status] > STATUS_RANK[record.status]
            and can_transition(record.status, history.status)
        )
        if not ahead and not (history.code and record.code_delivered is None):
            return record

        data = {"status": history.status.value if ahead else record.status.value}
        if history.code:
            data["code"] = history.code
        if history.resend_attempts > record.resend_attempts:
            data["resend_attempts"] = history.resend_attempts
        logger.info(f"History for sale {record.sale_id} is ahead of the cache, now {data['status']}")
        return await self._store.append(record.sale_id, SaleEvent(EventType.RECONSTRUCTED, data))
