"""
Tests for the SQL inventory.

Tests cover:
- Loading codes (duplicates skipped)
- Draw/mark lifecycle and order tagging
- Concurrent draws never hand out the same row
- An order never holds two rows
- Concurrent deliveries against N-1 codes
- Overlapping invocations for one sale draw and send once
"""

import asyncio

import pytest

from conftest import BUYER_ID, ROBLOX_400_TITLE, SELLER_ID, FakeMarketplace
from giftbot.activity import ActivityLog
from giftbot.conversation import ConversationStatus, EventType, SaleEvent
from giftbot.engine import MessageFlowEngine
from giftbot.errors import InventoryError
from giftbot.inventory import SqlInventorySource
from giftbot.state_store import MemoryStateStore, SqlStateStore
from giftbot.storage import (
    Base,
    SessionLocal,
    engine as db_engine,
    add_codes,
    get_inventory_counts,
)


@pytest.fixture(scope="function")
def db():
    """Fresh inventory table for each test."""
    import giftbot.models  # noqa: F401

    Base.metadata.create_all(bind=db_engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=db_engine)


@pytest.fixture
def source(db):
    return SqlInventorySource()


class TestLoadCodes:
    def test_add_and_count(self, db):
        added, skipped = add_codes(db, "steam-5", ["AAA", "BBB", " ", "AAA"])
        assert (added, skipped) == (2, 1)
        assert get_inventory_counts(db) == {"steam-5": {"available": 2, "reserved": 0, "delivered": 0}}

    def test_code_is_unique_across_products(self, db):
        add_codes(db, "steam-5", ["SHARED"])
        assert add_codes(db, "steam-10", ["SHARED"]) == (0, 1)


class TestDrawAndMark:
    def test_lifecycle(self, db, source):
        add_codes(db, "roblox-400", ["R1", "R2"])

        drawn = asyncio.run(source.draw_available_code("roblox-400", order_id="O1"))
        assert drawn.code == "R1"
        assert drawn.status == "reserved"

        asyncio.run(source.mark_delivered(drawn.row_ref, "O1"))
        # Marking again for the same order is a no-op
        asyncio.run(source.mark_delivered(drawn.row_ref, "O1"))

        found = asyncio.run(source.code_for_order("O1"))
        assert found.code == "R1"
        assert found.status == "delivered"
        assert get_inventory_counts(db)["roblox-400"] == {"available": 1, "reserved": 0, "delivered": 1}

    def test_cannot_mark_for_another_order(self, db, source):
        add_codes(db, "roblox-400", ["R1"])
        drawn = asyncio.run(source.draw_available_code("roblox-400", order_id="O1"))

        with pytest.raises(InventoryError):
            asyncio.run(source.mark_delivered(drawn.row_ref, "O2"))

    def test_empty_product_returns_none(self, source):
        assert asyncio.run(source.draw_available_code("steam-10")) is None

    def test_unknown_order(self, source):
        assert asyncio.run(source.code_for_order("missing")) is None

    def test_order_keeps_its_row(self, db, source):
        add_codes(db, "roblox-400", ["R1", "R2"])

        first = asyncio.run(source.draw_available_code("roblox-400", order_id="O1"))
        second = asyncio.run(source.draw_available_code("roblox-400", order_id="O1"))

        assert second.row_ref == first.row_ref
        assert get_inventory_counts(db)["roblox-400"] == {"available": 1, "reserved": 1, "delivered": 0}


class TestConcurrentDraws:
    def test_each_row_handed_out_once(self, db, source):
        add_codes(db, "roblox-800", [f"C{i}" for i in range(6)])

        async def draw_all():
            return await asyncio.gather(*(
                source.draw_available_code("roblox-800", order_id=f"O{i}") for i in range(8)
            ))

        results = asyncio.run(draw_all())
        codes = [r.code for r in results if r is not None]
        assert len(codes) == 6
        assert len(set(codes)) == 6
        assert results.count(None) == 2

    def test_one_row_per_order(self, db, source):
        add_codes(db, "roblox-400", ["R1", "R2", "R3"])

        async def draw_same_order():
            return await asyncio.gather(*(
                source.draw_available_code("roblox-400", order_id="O1") for _ in range(4)
            ))

        results = asyncio.run(draw_same_order())
        assert len({r.code for r in results}) == 1
        assert get_inventory_counts(db)["roblox-400"]["available"] == 2


class TestConcurrentDeliveries:
    """N buyers say ready at once with N-1 codes in stock."""

    N = 5

    def test_n_minus_one_succeed(self, db, marketplace, notifier):
        add_codes(db, "roblox-400", [f"CODE-{i}" for i in range(self.N - 1)])
        store = MemoryStateStore()
        engine = MessageFlowEngine(marketplace, store, SqlInventorySource(), notifier, ActivityLog())

        async def scenario():
            records = []
            for i in range(self.N):
                marketplace.add_order(f"O{i}")
                records.append(await store.append(f"O{i}", SaleEvent(EventType.SALE_REGISTERED, {
                    "order_id": f"O{i}",
                    "seller_id": SELLER_ID,
                    "product_key": "roblox-400",
                    "product_title": ROBLOX_400_TITLE,
                    "status": ConversationStatus.INSTRUCTIONS_SENT.value,
                })))
            return await asyncio.gather(*(engine.deliver_code(record) for record in records))

        results = asyncio.run(scenario())

        delivered = [r for r in results if r.outcome == "delivered"]
        assert len(delivered) == self.N - 1
        assert len({r.code for r in delivered}) == self.N - 1
        assert [r.outcome for r in results].count("out_of_stock") == 1
        assert notifier.categories().count("stock") == 1
        assert get_inventory_counts(db)["roblox-400"]["delivered"] == self.N - 1


class YieldingMarketplace(FakeMarketplace):
    """Hands control to the other invocation after every history fetch."""

    async def get_pack_messages(self, sale_id, seller_id):
        messages = await super().get_pack_messages(sale_id, seller_id)
        await asyncio.sleep(0)
        return messages


class TestOverlappingInvocations:
    """A redelivered webhook and a sweep handle the same ready message at once."""

    def test_one_draw_one_code(self, db, notifier):
        add_codes(db, "roblox-400", ["C1", "C2", "C3"])
        marketplace = YieldingMarketplace()
        marketplace.add_order("O1")
        store = SqlStateStore()
        engine = MessageFlowEngine(marketplace, store, SqlInventorySource(), notifier, ActivityLog())

        async def scenario():
            await store.append("O1", SaleEvent(EventType.SALE_REGISTERED, {
                "order_id": "O1",
                "seller_id": SELLER_ID,
                "buyer_id": BUYER_ID,
                "product_key": "roblox-400",
                "product_title": ROBLOX_400_TITLE,
                "status": ConversationStatus.INSTRUCTIONS_SENT.value,
            }))
            marketplace.buyer_says("O1", "listo")
            return await asyncio.gather(engine.process_sale("O1"), engine.process_sale("O1"))

        results = asyncio.run(scenario())

        assert sorted(r.action for r in results) == ["deliver_code", "duplicate"]
        code_messages = [text for text in marketplace.sent_to("O1") if "Tu codigo" in text]
        assert len(code_messages) == 1
        assert get_inventory_counts(db)["roblox-400"] == {"available": 2, "reserved": 0, "delivered": 1}
        record = asyncio.run(store.load("O1"))
        assert record.status == ConversationStatus.CODE_SENT
        assert record.code_delivered in code_messages[0]
        assert notifier.categories().count("delivery") == 1
