"""
Bot composition: wires the collaborators together from settings and exposes
the entry points the HTTP layer calls.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from giftbot.activity import ActivityLog
from giftbot.auth import TokenManager
from giftbot.config import Settings
from giftbot.conversation import ConversationStatus, SaleRecord
from giftbot.engine import EngineResult, MessageFlowEngine
from giftbot.errors import AuthError, ConfigurationError, GiftBotError
from giftbot.inventory import InventorySource, SqlInventorySource
from giftbot.llm import LlmAnswerer
from giftbot.marketplace import MarketplaceClient
from giftbot.notifier import TelegramNotifier
from giftbot.orders import OrderIntake, OrderResult
from giftbot.questions import QuestionResponder, QuestionResult
from giftbot.schemas import PackMessage, WebhookNotification
from giftbot.state_store import MemoryStateStore, SqlStateStore, StateStore

logger = logging.getLogger(__name__)

ORDER_TOPICS = ("orders_v2", "orders")
MESSAGE_TOPICS = ("messages",)
QUESTION_TOPICS = ("questions",)

_PENDING = (
    ConversationStatus.NO_CONTACT,
    ConversationStatus.WELCOME_SENT,
    ConversationStatus.INSTRUCTIONS_SENT,
)


class GiftBot:
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
        answer_char_limit: int = 2000,
        enabled: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.marketplace = marketplace
        self.store = store
        self.activity = activity
        self.notifier = notifier
        self.enabled = enabled
        self.auth_error: Optional[str] = None
        self.questions_answered = 0
        self._http_client = http_client

        self.engine = MessageFlowEngine(
            marketplace,
            store,
            inventory,
            notifier,
            activity,
            answerer=answerer,
            resend_limit=resend_limit,
            order_lookup_limit=order_lookup_limit,
            sweep_order_limit=sweep_order_limit,
        )
        self.orders = OrderIntake(marketplace, store, self.engine.reconstructor, notifier, activity)
        self.questions = QuestionResponder(
            marketplace, notifier, activity, answerer=answerer, answer_char_limit=answer_char_limit
        )

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def on_order_paid(self, resource_or_id: str, force: bool = False) -> OrderResult:
        return await self.orders.on_order_paid(resource_or_id, force=force)

    async def on_buyer_message(
        self,
        resource: Optional[str] = None,
        buyer_id: Optional[str] = None,
        sale_id: Optional[str] = None,
    ) -> EngineResult:
        return await self.engine.on_buyer_message(resource, buyer_id, sale_id=sale_id)

    async def on_question(self, resource_or_id: str) -> QuestionResult:
        result = await self.questions.on_question(resource_or_id)
        if result.action == "answered":
            self.questions_answered += 1
        return result

    async def check_messages(self, limit: Optional[int] = None) -> dict:
        return await self.engine.check_messages(limit)

    async def handle_notification(self, notification: WebhookNotification) -> tuple[str, Optional[str]]:
        """
        Dispatch one marketplace notification.

        Never raises: failures are logged, pushed to the operator and
        reported back as ("error", detail).

        Returns:
            (status, detail) where status is ok, skipped, ignored or error
        """
        topic = notification.topic
        if not self.enabled:
            logger.info(f"Bot paused, skipping {topic} notification")
            self.activity.record("message", f"Webhook ignorado (bot pausado): {topic}", notification.resource)
            return "skipped", "bot paused"

        try:
            if topic in ORDER_TOPICS:
                result = await self.on_order_paid(notification.resource)
                detail = result.action
            elif topic in MESSAGE_TOPICS:
                detail = (await self.on_buyer_message(notification.resource, notification.user_id)).action
            elif topic in QUESTION_TOPICS:
                detail = (await self.on_question(notification.resource)).action
            else:
                logger.info(f"Unhandled notification topic: {topic}")
                self.activity.record("error", f"Webhook no manejado: {topic}", notification.resource)
                return "ignored", f"unhandled topic {topic}"
        except (AuthError, ConfigurationError) as e:
            self.auth_error = str(e)
            logger.error(f"Auth failure on {topic} notification: {e}")
            self.activity.record("error", "Error de autenticacion", str(e))
            await self.notifier.notify("auth", str(e))
            return "error", str(e)
        except (GiftBotError, httpx.HTTPError) as e:
            logger.error(f"Failed to handle {topic} notification: {e}")
            self.activity.record("error", f"Error en webhook: {str(e)[:120]}", notification.resource)
            await self.notifier.notify("webhook", f"{topic} {notification.resource}: {e}")
            return "error", str(e)
        except Exception as e:
            logger.exception(f"Unexpected error on {topic} notification")
            self.activity.record("error", f"Error en webhook: {str(e)[:120]}", notification.resource)
            await self.notifier.notify("webhook", f"{topic} {notification.resource}: {e}")
            return "error", str(e)

        self.auth_error = None
        return "ok", detail

    # -------------------------------------------------------------------------
    # Dashboard
    # -------------------------------------------------------------------------

    def toggle(self, enabled: Optional[bool] = None) -> bool:
        self.enabled = (not self.enabled) if enabled is None else enabled
        logger.info(f"Bot {'enabled' if self.enabled else 'paused'}")
        self.activity.record("message", "Bot activado" if self.enabled else "Bot pausado")
        return self.enabled

    async def chats(self, limit: int = 100) -> list[SaleRecord]:
        return await self.store.records(limit)

    async def chat_detail(self, sale_id: str) -> tuple[Optional[SaleRecord], list[PackMessage]]:
        record = await self.store.load(sale_id)
        seller_id = (record.seller_id if record else None) or await self.marketplace.seller_id()
        messages = await self.marketplace.get_pack_messages(sale_id, seller_id)
        return record, messages

    async def stats(self) -> dict:
        records = await self.store.records(limit=1000)
        return {
            "authenticated": self.marketplace.tokens.token_valid,
            "auth_error": self.auth_error,
            "bot_enabled": self.enabled,
            "stats": {
                "total_orders": len(records),
                "codes_delivered": sum(1 for r in records if r.code_delivered),
                "pending_orders": sum(1 for r in records if r.status in _PENDING),
                "human_requested": sum(1 for r in records if r.status == ConversationStatus.HUMAN_ESCALATED),
                "questions_answered": self.questions_answered,
            },
            "recent_activity": [entry.to_dict() for entry in self.activity.recent(20)],
        }

    async def mark_delivered(self, sale_id: str, order_id: Optional[str] = None, shipment_id: Optional[str] = None) -> Optional[str]:
        """
        Manually mark a sale's shipment delivered.

        Returns:
            The shipment id marked, or None when none could be found
        """
        if not shipment_id:
            if not order_id:
                record = await self.store.load(sale_id)
                order_id = record.order_id if record else None
            if order_id:
                shipment_id = (await self.marketplace.get_order(order_id)).shipping_id
        if not shipment_id:
            return None
        await self.marketplace.mark_shipment_delivered(shipment_id)
        self.activity.record("message", "Marcado como entregado manualmente", f"Sale: {sale_id} | Shipment: {shipment_id}")
        return shipment_id

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()


def build_bot(settings: Settings) -> GiftBot:
    """Create the bot and its collaborators from settings."""
    client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)
    tokens = TokenManager(
        client,
        settings.ML_API_URL,
        settings.ML_APP_ID,
        settings.ML_CLIENT_SECRET,
        settings.ML_REFRESH_TOKEN,
        seller_id=settings.ML_SELLER_ID,
    )
    marketplace = MarketplaceClient(
        client,
        tokens,
        api_url=settings.ML_API_URL,
        max_retries=settings.HTTP_MAX_RETRIES,
        backoff_cap=settings.HTTP_BACKOFF_CAP_SECONDS,
        message_char_limit=settings.MESSAGE_CHAR_LIMIT,
        send_delay=settings.SEND_DELAY_SECONDS,
    )
    store: StateStore = SqlStateStore() if settings.STATE_BACKEND == "sql" else MemoryStateStore()
    answerer = LlmAnswerer(settings.OPENAI_API_KEY, settings.OPENAI_MODEL) if settings.OPENAI_API_KEY else None

    logger.info(f"Building bot with {settings.STATE_BACKEND} state store, LLM tier {'on' if answerer else 'off'}")
    return GiftBot(
        marketplace,
        store,
        SqlInventorySource(),
        TelegramNotifier(settings.TELEGRAM_TOKEN, settings.TELEGRAM_CHAT_ID, client=client),
        ActivityLog(settings.ACTIVITY_LOG_SIZE),
        answerer=answerer,
        resend_limit=settings.RESEND_LIMIT,
        order_lookup_limit=settings.ORDER_LOOKUP_LIMIT,
        sweep_order_limit=settings.SWEEP_ORDER_LIMIT,
        answer_char_limit=settings.ANSWER_CHAR_LIMIT,
        enabled=settings.BOT_ENABLED,
        http_client=client,
    )
