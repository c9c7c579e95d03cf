"""
Post-sale conversation engine.

One invocation handles one buyer message for one sale:

1. fetch the sale's messages and stop if the seller already spoke last
2. load the record (or rebuild it from the history) and catch it up
3. claim the message by its hash; drop it when it was already claimed
4. pick an action with decide_action() and carry it out

Nothing is locked across the marketplace calls. Two overlapping invocations
for the same sale are stopped by the last-speaker check and the message
claim, which only one of them wins. An order never holds more than one
inventory row, so even two different messages cannot draw twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from giftbot.activity import ActivityLog
from giftbot.conversation import (
    SILENT_STATUSES,
    ConversationStatus,
    EventType,
    SaleEvent,
    SaleRecord,
)
from giftbot.errors import InventoryError, MarketplaceError
from giftbot.intents import Intent, detect_intents
from giftbot.inventory import InventorySource
from giftbot.llm import LlmAnswerer
from giftbot.logging_utils import mask_code
from giftbot.marketplace import MarketplaceClient
from giftbot.metrics import record_code_delivered, record_conversation_action, record_escalation
from giftbot.notifier import TelegramNotifier
from giftbot.products import (
    CANCEL_MESSAGE,
    CHANGE_REFUSED_MESSAGE,
    DELAY_MESSAGE,
    HUMAN_MESSAGE,
    REMINDER_MESSAGE,
    RESEND_LIMIT_MESSAGE,
    WELCOME_MESSAGE,
    Product,
    detect_product,
    find_chat_response,
    get_product,
)
from giftbot.reconstructor import ConversationReconstructor
from giftbot.schemas import Order, PackMessage
from giftbot.state_store import StateStore
from giftbot.utils import message_hash

logger = logging.getLogger(__name__)


class Action(str, Enum):
    SEND_WELCOME = "send_welcome"
    SEND_INSTRUCTIONS = "send_instructions"
    DELIVER_CODE = "deliver_code"
    RESEND_CODE = "resend_code"
    SEND_CANCEL = "send_cancel"
    ESCALATE = "escalate"
    ANSWER_OR_REMIND = "answer_or_remind"
    REFUSE_CHANGE = "refuse_change"
    IGNORE = "ignore"


def decide_action(record: SaleRecord, intents: frozenset, resend_limit: int) -> Action:
    """
    Choose what to do with a buyer message. Pure.

    Before delivery, human beats cancel beats ready. After delivery only
    the resend, human and change-product vocabularies get an answer.
    """
    status = record.status

    if status in SILENT_STATUSES:
        return Action.IGNORE

    if status == ConversationStatus.NO_CONTACT:
        return Action.SEND_WELCOME

    if status == ConversationStatus.CODE_SENT:
        if Intent.RESEND in intents:
            if record.resend_attempts < resend_limit:
                return Action.RESEND_CODE
            return Action.ESCALATE
        if Intent.HUMAN in intents:
            return Action.ESCALATE
        if Intent.CHANGE_PRODUCT in intents:
            return Action.REFUSE_CHANGE
        return Action.IGNORE

    if Intent.HUMAN in intents:
        return Action.ESCALATE
    if Intent.CANCEL in intents:
        return Action.SEND_CANCEL
    if Intent.READY in intents:
        return Action.DELIVER_CODE
    if status == ConversationStatus.WELCOME_SENT:
        return Action.SEND_INSTRUCTIONS
    return Action.ANSWER_OR_REMIND


@dataclass(frozen=True)
class EngineResult:
    action: str
    sale_id: Optional[str] = None
    status: Optional[ConversationStatus] = None
    responded: bool = False
    detail: Optional[str] = None


@dataclass(frozen=True)
class CodeResult:
    """
    Outcome of a delivery attempt.

    outcome: delivered, resent, out_of_stock, send_failed, error or missing
    """
    outcome: str
    code: Optional[str] = None
    record: Optional[SaleRecord] = None

    @property
    def success(self) -> bool:
        return self.outcome in ("delivered", "resent")


# Results that did not reach the decision step
SKIPPED_RESULTS = frozenset({
    "no_sale", "no_messages", "already_answered", "unknown_product", "duplicate", "terminal",
})


class MessageFlowEngine:
    def __init__(
        self,
        marketplace: MarketplaceClient,
        store: StateStore,
        inventory: InventorySource,
        notifier: TelegramNotifier,
        activity: ActivityLog,
        answerer: Optional[LlmAnswerer] = None,
        resend_limit: int = 2,
        order_lookup_limit: int = 20,
        sweep_order_limit: int = 10,
    ):
        self._marketplace = marketplace
        self._store = store
        self._inventory = inventory
        self._notifier = notifier
        self._activity = activity
        self._answerer = answerer
        self._resend_limit = resend_limit
        self._order_lookup_limit = order_lookup_limit
        self._sweep_order_limit = sweep_order_limit
        self.reconstructor = ConversationReconstructor(marketplace, store, inventory)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def on_buyer_message(
        self,
        resource: Optional[str] = None,
        buyer_id: Optional[str] = None,
        sale_id: Optional[str] = None,
    ) -> EngineResult:
        """
        Handle a messages notification.

        The sale is taken from the notified message when it can be looked
        up, otherwise from the buyer's newest paid order.
        """
        seller_id = await self._marketplace.seller_id()
        order = None
        # Notifications usually carry the seller as user_id
        if buyer_id and str(buyer_id) == seller_id:
            buyer_id = None

        if sale_id is None and resource:
            message = await self._marketplace.get_message_by_resource(resource)
            if message is not None:
                if message.from_user_id and str(message.from_user_id) == seller_id:
                    logger.info(f"Ignoring our own message {message.message_id}")
                    return EngineResult("own_message", sale_id=message.pack_id)
                sale_id = message.pack_id
                buyer_id = buyer_id or message.from_user_id

        if sale_id is None and buyer_id:
            order = await self._find_order_for_buyer(seller_id, buyer_id)
            if order is not None:
                sale_id = order.sale_id

        if sale_id is None:
            logger.warning(f"No sale found for message resource={resource} buyer={buyer_id}")
            return EngineResult("no_sale")

        return await self.process_sale(sale_id, order=order, seller_id=seller_id)

    async def _find_order_for_buyer(self, seller_id: str, buyer_id: str) -> Optional[Order]:
        try:
            orders = await self._marketplace.get_seller_orders(seller_id, limit=self._order_lookup_limit)
        except MarketplaceError as e:
            logger.error(f"Order lookup for buyer {buyer_id} failed: {e}")
            return None
        for order in orders:
            if order.buyer_id == str(buyer_id) and order.status == "paid" and detect_product(order.item_title):
                return order
        return None

    async def process_sale(
        self,
        sale_id: str,
        order: Optional[Order] = None,
        seller_id: Optional[str] = None,
    ) -> EngineResult:
        seller_id = seller_id or await self._marketplace.seller_id()
        messages = await self._marketplace.get_pack_messages(sale_id, seller_id)

        def from_seller(message: PackMessage) -> bool:
            return str(message.from_user_id) == str(seller_id)

        if not any(not from_seller(m) for m in messages):
            return EngineResult("no_messages", sale_id=sale_id)
        if from_seller(messages[-1]):
            logger.info(f"Sale {sale_id} already answered, last message is ours")
            return EngineResult("already_answered", sale_id=sale_id)

        record = await self._store.load(sale_id)
        if record is None:
            record = await self.reconstructor.reconstruct(sale_id, seller_id, order=order, messages=messages)
            reconstructed = True
        else:
            previous = record.status
            record = await self.reconstructor.reconcile(record, messages)
            reconstructed = False
            if previous != ConversationStatus.CODE_SENT and record.status == ConversationStatus.CODE_SENT:
                await self._mark_shipment(record)

        product = get_product(record.product_key)
        if product is None:
            if reconstructed:
                await self._notifier.notify(
                    "order", f"Producto no reconocido en sale {sale_id}: {record.product_title}"
                )
            self._activity.record("error", "Producto no reconocido", f"Sale: {sale_id} - {record.product_title}")
            return EngineResult("unknown_product", sale_id=sale_id, status=record.status)

        last = messages[-1]
        key = last.id or last.created_at or str(len(messages) - 1)
        digest = message_hash(key, last.text)
        if digest == record.last_buyer_message_hash:
            logger.info(f"Duplicate buyer message on sale {sale_id}, skipping")
            return EngineResult("duplicate", sale_id=sale_id, status=record.status)
        claimed = await self._store.append_once(
            sale_id, SaleEvent(EventType.BUYER_MESSAGE, {"hash": digest, "text": last.text[:500]}), digest
        )
        if claimed is None:
            logger.info(f"Buyer message on sale {sale_id} claimed by another invocation, skipping")
            return EngineResult("duplicate", sale_id=sale_id, status=record.status)
        record = claimed
        if record.status in SILENT_STATUSES:
            return EngineResult("terminal", sale_id=sale_id, status=record.status)

        intents = detect_intents(last.text)
        action = decide_action(record, intents, self._resend_limit)
        logger.info(
            f"Sale {sale_id}: {record.status.value} + {sorted(i.value for i in intents)} -> {action.value}"
        )
        record_conversation_action(action.value)
        return await self._execute(action, record, product, last.text, intents)

    async def check_messages(self, limit: Optional[int] = None) -> dict:
        """
        Sweep recent paid orders for buyer messages nobody answered.

        Returns:
            {"checked": ..., "processed": ..., "responded": ...}
        """
        seller_id = await self._marketplace.seller_id()
        orders = await self._marketplace.get_seller_orders(seller_id, limit=limit or self._sweep_order_limit)

        checked = processed = responded = 0
        seen: set[str] = set()
        for order in orders:
            if order.status != "paid" or order.sale_id in seen or not detect_product(order.item_title):
                continue
            seen.add(order.sale_id)
            checked += 1
            try:
                result = await self.process_sale(order.sale_id, order=order, seller_id=seller_id)
            except (MarketplaceError, InventoryError) as e:
                logger.error(f"Sweep failed for sale {order.sale_id}: {e}")
                self._activity.record("error", "Error revisando mensajes", f"Sale: {order.sale_id} - {e}")
                continue
            if result.action not in SKIPPED_RESULTS:
                processed += 1
            if result.responded:
                responded += 1

        logger.info(f"Message sweep: checked={checked} processed={processed} responded={responded}")
        return {"checked": checked, "processed": processed, "responded": responded}

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def _execute(
        self,
        action: Action,
        record: SaleRecord,
        product: Product,
        text: str,
        intents: frozenset,
    ) -> EngineResult:
        sale_id = record.sale_id

        if action == Action.SEND_WELCOME:
            if not await self._send(record, list(WELCOME_MESSAGE) + list(product.instructions)):
                return EngineResult("send_failed", sale_id=sale_id, status=record.status)
            record = await self._store.append(sale_id, SaleEvent(EventType.INSTRUCTIONS_SENT, {"welcome": True}))
            self._activity.record("message", "Bienvenida e instrucciones enviadas", f"Sale: {sale_id}")
            return EngineResult(action.value, sale_id=sale_id, status=record.status, responded=True)

        if action == Action.SEND_INSTRUCTIONS:
            if not await self._send(record, list(product.instructions)):
                return EngineResult("send_failed", sale_id=sale_id, status=record.status)
            record = await self._store.append(sale_id, SaleEvent(EventType.INSTRUCTIONS_SENT))
            self._activity.record("message", "Instrucciones enviadas", f"Sale: {sale_id}")
            return EngineResult(action.value, sale_id=sale_id, status=record.status, responded=True)

        if action in (Action.DELIVER_CODE, Action.RESEND_CODE):
            result = await self.deliver_code(record)
            if result.outcome == "missing":
                return await self._escalate(record, "code_missing", HUMAN_MESSAGE, text)
            final = result.record or record
            return EngineResult(
                action.value if result.success else result.outcome,
                sale_id=sale_id,
                status=final.status,
                responded=result.outcome in ("delivered", "resent", "out_of_stock"),
            )

        if action == Action.SEND_CANCEL:
            if not await self._send(record, [CANCEL_MESSAGE]):
                return EngineResult("send_failed", sale_id=sale_id, status=record.status)
            record = await self._store.append(sale_id, SaleEvent(EventType.CANCELLED))
            self._activity.record("message", "Instrucciones de cancelacion enviadas", f"Sale: {sale_id}")
            return EngineResult(action.value, sale_id=sale_id, status=record.status, responded=True)

        if action == Action.ESCALATE:
            if Intent.RESEND in intents and record.status == ConversationStatus.CODE_SENT:
                return await self._escalate(record, "resend_limit", RESEND_LIMIT_MESSAGE, text)
            return await self._escalate(record, "human", HUMAN_MESSAGE, text)

        if action == Action.REFUSE_CHANGE:
            sent = await self._send(record, [CHANGE_REFUSED_MESSAGE])
            return EngineResult(action.value if sent else "send_failed", sale_id=sale_id, status=record.status, responded=sent)

        if action == Action.ANSWER_OR_REMIND:
            return await self._answer_or_remind(record, product, text)

        return EngineResult(action.value, sale_id=sale_id, status=record.status)

    async def _answer_or_remind(self, record: SaleRecord, product: Product, text: str) -> EngineResult:
        sale_id = record.sale_id
        answer = find_chat_response(text, record.product_title)
        if answer is None and self._answerer is not None:
            answer = await self._answerer.answer_chat(text, product.label)

        if answer:
            sent = await self._send(record, [answer])
            if sent:
                self._activity.record("message", "Consulta respondida", f"Sale: {sale_id}")
            return EngineResult("answered" if sent else "send_failed", sale_id=sale_id, status=record.status, responded=sent)

        sent = await self._send(record, [REMINDER_MESSAGE])
        await self._notifier.notify("human", f"Consulta no reconocida en sale {sale_id}: \"{text[:200]}\"")
        self._activity.record("human", "Consulta no reconocida", f"Sale: {sale_id} - {text[:100]}")
        return EngineResult("reminded" if sent else "send_failed", sale_id=sale_id, status=record.status, responded=sent)

    async def _escalate(self, record: SaleRecord, reason: str, message: str, text: str) -> EngineResult:
        sale_id = record.sale_id
        if not await self._send(record, [message]):
            return EngineResult("send_failed", sale_id=sale_id, status=record.status)
        record = await self._store.append(sale_id, SaleEvent(EventType.ESCALATED, {"reason": reason}))
        record_escalation(reason)
        await self._notifier.notify("human", f"Sale {sale_id} derivada a humano ({reason}): \"{text[:200]}\"")
        self._activity.record("human", "Derivado a humano", f"Sale: {sale_id} - {reason}")
        return EngineResult(Action.ESCALATE.value, sale_id=sale_id, status=record.status, responded=True, detail=reason)

    async def _send(self, record: SaleRecord, texts: list[str]) -> bool:
        """Send a burst to the buyer. False when it did not fully go out."""
        seller_id = record.seller_id or await self._marketplace.seller_id()
        try:
            await self._marketplace.send_messages(record.sale_id, seller_id, texts, record.buyer_id)
        except (MarketplaceError, httpx.HTTPError) as e:
            logger.error(f"Sending to sale {record.sale_id} failed: {e}")
            self._activity.record("error", "No se pudo enviar mensaje", f"Sale: {record.sale_id} - {e}")
            return False
        return True

    # -------------------------------------------------------------------------
    # Code delivery
    # -------------------------------------------------------------------------

    async def deliver_code(self, record: SaleRecord) -> CodeResult:
        """
        Put a code in the buyer's hands.

        A code already stored on the record is sent again and nothing is
        drawn. Otherwise a code already claimed for the order is reused, and
        only then is a new one drawn. The inventory row is marked delivered
        before the buyer sees the code.
        """
        product = get_product(record.product_key)
        if product is None:
            return CodeResult("error", record=record)

        if record.code_delivered:
            return await self._send_code(record, product, record.code_delivered)

        order_id = record.order_id or record.sale_id
        try:
            claimed = await self._inventory.code_for_order(order_id)
            if claimed is not None:
                logger.info(f"Reusing code {mask_code(claimed.code)} already claimed for order {order_id}")
                if claimed.status == "reserved":
                    await self._inventory.mark_delivered(claimed.row_ref, order_id)
            elif record.status == ConversationStatus.CODE_SENT:
                logger.error(f"Sale {record.sale_id} is marked delivered but no code is known")
                return CodeResult("missing", record=record)
            else:
                claimed = await self._inventory.draw_available_code(product.key, order_id=order_id)
                if claimed is None:
                    return await self._out_of_stock(record, product)
                await self._inventory.mark_delivered(claimed.row_ref, order_id)
        except InventoryError as e:
            logger.error(f"Inventory failure on sale {record.sale_id}: {e}")
            await self._notifier.notify("code", f"Error de inventario en sale {record.sale_id} ({product.label}): {e}")
            self._activity.record("error", "Error al entregar codigo", f"Sale: {record.sale_id} - {e}")
            return CodeResult("error", record=record)

        record = await self._store.append(
            record.sale_id, SaleEvent(EventType.CODE_ASSIGNED, {"code": claimed.code, "order_id": order_id})
        )
        return await self._send_code(record, product, claimed.code)

    async def _out_of_stock(self, record: SaleRecord, product: Product) -> CodeResult:
        logger.warning(f"No {product.key} codes left for sale {record.sale_id}")
        await self._send(record, [DELAY_MESSAGE])
        await self._notifier.notify(
            "stock",
            f"SIN STOCK - Producto: {product.label}, Sale: {record.sale_id}, Buyer: {record.buyer_id}",
        )
        self._activity.record("error", "Sin stock", f"Sale: {record.sale_id} - {product.key}")
        return CodeResult("out_of_stock", record=record)

    async def _send_code(self, record: SaleRecord, product: Product, code: str) -> CodeResult:
        resend = record.status == ConversationStatus.CODE_SENT
        texts = [product.code_message(code)]
        if not resend:
            texts.extend(product.final_message)

        if not await self._send(record, texts):
            return CodeResult("send_failed", code=code, record=record)

        if resend:
            record = await self._store.append(record.sale_id, SaleEvent(EventType.CODE_RESENT))
            logger.info(f"Code {mask_code(code)} resent on sale {record.sale_id} (attempt {record.resend_attempts})")
            self._activity.record("code_delivery", "Codigo reenviado", f"Sale: {record.sale_id}")
            return CodeResult("resent", code=code, record=record)

        record = await self._store.append(record.sale_id, SaleEvent(EventType.CODE_SENT, {"code": code}))
        record_code_delivered(product.key)
        logger.info(f"Code {mask_code(code)} delivered on sale {record.sale_id}")
        self._activity.record("code_delivery", "Codigo entregado", f"Sale: {record.sale_id} - {product.label}")
        await self._notifier.notify("delivery", f"Codigo entregado - {product.label}, Sale: {record.sale_id}")
        await self._mark_shipment(record)
        return CodeResult("delivered", code=code, record=record)

    async def _mark_shipment(self, record: SaleRecord) -> None:
        if not record.order_id:
            return
        try:
            order = await self._marketplace.get_order(record.order_id)
            if order.shipping_id:
                await self._marketplace.mark_shipment_delivered(order.shipping_id)
                logger.info(f"Shipment {order.shipping_id} marked delivered")
        except (MarketplaceError, httpx.HTTPError) as e:
            logger.warning(f"Could not mark shipment for order {record.order_id} delivered: {e}")
