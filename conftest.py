"""
Pytest configuration and shared fixtures.

Environment variables are set here before any giftbot import so settings
are built against a throwaway SQLite database. The fakes below stand in for
the marketplace, the inventory, the notifier and the LLM tier so conversation
tests run without network access.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Optional

import pytest

_TEST_DB_DIR = tempfile.mkdtemp(prefix="giftbot-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("ML_APP_ID", "5550001")
os.environ.setdefault("STATE_BACKEND", "memory")

# Clear settings cache before any app imports to ensure test env vars are used
from giftbot.config import get_settings
get_settings.cache_clear()

from giftbot.activity import ActivityLog  # noqa: E402
from giftbot.bot import GiftBot  # noqa: E402
from giftbot.conversation import ConversationStatus, EventType, SaleEvent  # noqa: E402
from giftbot.engine import MessageFlowEngine  # noqa: E402
from giftbot.errors import InventoryError, MarketplaceError  # noqa: E402
from giftbot.inventory import DrawnCode  # noqa: E402
from giftbot.schemas import InboundMessage, Item, Order, PackMessage, Question, sort_messages  # noqa: E402
from giftbot.state_store import MemoryStateStore  # noqa: E402


SELLER_ID = "999"
BUYER_ID = "111"
ROBLOX_400_TITLE = "Gift Card Roblox 400 Robux Digital Entrega Inmediata"

_BASE_TIME = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


class FakeMarketplace:
    """In-memory marketplace. Sent messages show up in the sale's history."""

    def __init__(self, seller_id: str = SELLER_ID):
        self.seller = seller_id
        self.tokens = SimpleNamespace(token_valid=True)
        self.orders: dict[str, Order] = {}
        self.messages: dict[str, list[PackMessage]] = {}
        self.resources: dict[str, InboundMessage] = {}
        self.questions: dict[str, Question] = {}
        self.items: dict[str, Item] = {}
        self.sent: list[tuple[str, str]] = []
        self.answers: list[tuple[str, str]] = []
        self.shipments_marked: list[str] = []
        self.fail_sends = False
        self.echo_sends = True
        self._clock = 0

    def _next_time(self) -> str:
        self._clock += 1
        return (_BASE_TIME + timedelta(seconds=self._clock)).strftime("%Y-%m-%dT%H:%M:%SZ")

    def add_order(
        self,
        order_id: str = "O1",
        pack_id: Optional[str] = None,
        title: str = ROBLOX_400_TITLE,
        status: str = "paid",
        buyer_id: str = BUYER_ID,
        shipping_id: Optional[str] = "SH1",
    ) -> Order:
        order = Order(
            id=order_id,
            status=status,
            pack_id=pack_id,
            buyer_id=buyer_id,
            buyer_nickname="COMPRADOR",
            item_id="MLA1",
            item_title=title,
            shipping_id=shipping_id,
        )
        self.orders[order_id] = order
        return order

    def buyer_says(self, sale_id: str, text: str, buyer_id: str = BUYER_ID) -> PackMessage:
        message = PackMessage(
            id=f"m{self._clock + 1}",
            from_user_id=buyer_id,
            to_user_id=self.seller,
            text=text,
            created_at=self._next_time(),
        )
        self.messages.setdefault(sale_id, []).append(message)
        return message

    def seller_said(self, sale_id: str, text: str) -> PackMessage:
        message = PackMessage(
            id=f"m{self._clock + 1}",
            from_user_id=self.seller,
            to_user_id=BUYER_ID,
            text=text,
            created_at=self._next_time(),
        )
        self.messages.setdefault(sale_id, []).append(message)
        return message

    def sent_to(self, sale_id: str) -> list[str]:
        return [text for sid, text in self.sent if sid == sale_id]

    async def seller_id(self) -> str:
        return self.seller

    async def get_order(self, order_id: str) -> Order:
        if order_id not in self.orders:
            raise MarketplaceError(f"order {order_id} not found", status_code=404)
        return self.orders[order_id]

    async def get_sale_order(self, sale_id: str) -> Optional[Order]:
        for order in self.orders.values():
            if order.sale_id == sale_id:
                return order
        return None

    async def get_seller_orders(self, seller_id: str, limit: int = 50, offset: int = 0) -> list[Order]:
        return list(reversed(list(self.orders.values())))[offset:offset + limit]

    async def get_pack_messages(self, sale_id: str, seller_id: str) -> list[PackMessage]:
        return sort_messages(list(self.messages.get(sale_id, [])))

    async def send_messages(self, sale_id: str, seller_id: str, texts, buyer_id: Optional[str] = None) -> int:
        if self.fail_sends:
            raise MarketplaceError("send rejected", status_code=403)
        for text in texts:
            self.sent.append((sale_id, text))
            if self.echo_sends:
                self.seller_said(sale_id, text)
        return len(texts)

    async def mark_shipment_delivered(self, shipment_id: str) -> None:
        self.shipments_marked.append(shipment_id)

    async def get_message_by_resource(self, resource: str) -> Optional[InboundMessage]:
        return self.resources.get(resource)

    async def get_question(self, question_id: str) -> Question:
        return self.questions[question_id]

    async def answer_question(self, question_id: str, text: str) -> None:
        self.answers.append((question_id, text))

    async def get_item(self, item_id: str) -> Item:
        if item_id not in self.items:
            raise MarketplaceError(f"item {item_id} not found", status_code=404)
        return self.items[item_id]

    async def get_item_description(self, item_id: str) -> str:
        return ""


class RecordingNotifier:
    def __init__(self):
        self.notifications: list[tuple[str, str]] = []

    async def notify(self, category: str, message: str) -> bool:
        self.notifications.append((category, message))
        return True

    def categories(self) -> list[str]:
        return [category for category, _ in self.notifications]


class StubAnswerer:
    def __init__(self, answer: Optional[str] = None):
        self.answer = answer
        self.calls: list[str] = []

    async def answer_chat(self, text: str, product_label: str = "") -> Optional[str]:
        self.calls.append(text)
        return self.answer

    async def answer_question(self, question: str, item_title: str = "", description: str = "") -> Optional[str]:
        self.calls.append(question)
        return self.answer


class FakeInventory:
    """Inventory with a list of codes per product; counts every draw."""

    def __init__(self, codes: Optional[dict] = None):
        self.available: dict[str, list[str]] = {k: list(v) for k, v in (codes or {}).items()}
        self.rows: dict[int, dict] = {}
        self.draws = 0
        self.fail_mark = False

    async def draw_available_code(self, product_key: str, order_id: Optional[str] = None) -> Optional[DrawnCode]:
        self.draws += 1
        pool = self.available.get(product_key) or []
        if not pool:
            return None
        code = pool.pop(0)
        row_ref = len(self.rows) + 1
        self.rows[row_ref] = {"code": code, "status": "reserved", "order_id": order_id}
        return DrawnCode(code=code, row_ref=row_ref)

    async def mark_delivered(self, row_ref: int, order_id: str) -> None:
        if self.fail_mark:
            raise InventoryError("inventory unavailable")
        self.rows[row_ref].update(status="delivered", order_id=order_id)

    async def code_for_order(self, order_id: str) -> Optional[DrawnCode]:
        for row_ref, row in self.rows.items():
            if row["order_id"] == order_id:
                return DrawnCode(code=row["code"], row_ref=row_ref, status=row["status"])
        return None


@pytest.fixture
def marketplace():
    return FakeMarketplace()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def activity():
    return ActivityLog(maxlen=50)


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def inventory():
    return FakeInventory({"roblox-400": ["ABCD-1234", "EFGH-5678"]})


@pytest.fixture
def answerer():
    return StubAnswerer()


@pytest.fixture
def engine(marketplace, store, inventory, notifier, activity, answerer):
    return MessageFlowEngine(
        marketplace,
        store,
        inventory,
        notifier,
        activity,
        answerer=answerer,
        resend_limit=2,
    )


@pytest.fixture
def bot(marketplace, store, inventory, notifier, activity, answerer):
    """Bot wired to the fakes, for the HTTP tests."""
    return GiftBot(marketplace, store, inventory, notifier, activity, answerer=answerer)


async def register_sale(
    store,
    sale_id: str = "O1",
    order_id: str = "O1",
    product_key: str = "roblox-400",
    status: ConversationStatus = ConversationStatus.NO_CONTACT,
):
    """Register a sale the way order intake does."""
    return await store.append(
        sale_id,
        SaleEvent(
            EventType.SALE_REGISTERED,
            {
                "order_id": order_id,
                "seller_id": SELLER_ID,
                "buyer_id": BUYER_ID,
                "product_key": product_key,
                "product_title": ROBLOX_400_TITLE,
                "status": status.value,
            },
        ),
    )
