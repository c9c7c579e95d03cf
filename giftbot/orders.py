"""
Paid-order intake.

A paid order only registers the sale at NO_CONTACT; the first message goes
out when the buyer writes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from giftbot.activity import ActivityLog
from giftbot.conversation import ConversationStatus, EventType, SaleEvent
from giftbot.errors import AuthError, ConfigurationError, MarketplaceError
from giftbot.marketplace import MarketplaceClient
from giftbot.notifier import TelegramNotifier
from giftbot.products import detect_product
from giftbot.reconstructor import ConversationReconstructor
from giftbot.state_store import StateStore
from giftbot.utils import extract_resource_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderResult:
    """
    action: registered, skipped_unpaid, skipped_unknown_product,
    skipped_tracked, skipped_exists or error
    """
    action: str
    message: str
    sale_id: Optional[str] = None
    order_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "message": self.message,
            "sale_id": self.sale_id,
            "order_id": self.order_id,
        }


class OrderIntake:
    def __init__(
        self,
        marketplace: MarketplaceClient,
        store: StateStore,
        reconstructor: ConversationReconstructor,
        notifier: TelegramNotifier,
        activity: ActivityLog,
    ):
        self._marketplace = marketplace
        self._store = store
        self._reconstructor = reconstructor
        self._notifier = notifier
        self._activity = activity

    async def on_order_paid(self, resource_or_id: str, force: bool = False) -> OrderResult:
        """
        Register a paid order.

        Args:
            resource_or_id: "/orders/123" or "123"
            force: register even if the sale is already tracked or already
                has seller messages (replay tooling)
        """
        order_id = extract_resource_id(resource_or_id, prefix="/orders/")

        try:
            seller_id = await self._marketplace.seller_id()
            order = await self._marketplace.get_order(order_id)
        except (AuthError, ConfigurationError) as e:
            logger.error(f"Auth failure handling order {order_id}: {e}")
            await self._notifier.notify("auth", f"No se pudo procesar la orden {order_id}: {e}")
            self._activity.record("error", "Error de autenticacion", str(e))
            return OrderResult("error", str(e), order_id=order_id)
        except MarketplaceError as e:
            logger.error(f"Fetching order {order_id} failed: {e}")
            self._activity.record("error", "Error al obtener orden", f"Orden: {order_id} - {e}")
            return OrderResult("error", str(e), order_id=order_id)

        sale_id = order.sale_id

        if order.status != "paid":
            logger.info(f"Order {order_id} is {order.status}, not paid")
            return OrderResult("skipped_unpaid", f"Order status is {order.status}", sale_id, order_id)

        product = detect_product(order.item_title)
        if product is None:
            logger.warning(f"Unknown product on order {order_id}: {order.item_title!r}")
            await self._notifier.notify("order", f"Producto no reconocido en orden {order_id}: {order.item_title}")
            self._activity.record("error", "Producto no reconocido", f"Orden: {order_id} - {order.item_title}")
            return OrderResult("skipped_unknown_product", f"Unknown product: {order.item_title}", sale_id, order_id)

        if not force:
            existing = await self._store.load(sale_id)
            if existing is not None:
                return OrderResult("skipped_tracked", f"Sale already tracked ({existing.status.value})", sale_id, order_id)

            messages = await self._marketplace.get_pack_messages(sale_id, seller_id)
            if any(str(m.from_user_id) == seller_id for m in messages):
                record = await self._reconstructor.reconstruct(sale_id, seller_id, order=order, messages=messages)
                logger.info(f"Sale {sale_id} already has seller messages, reconstructed as {record.status.value}")
                return OrderResult("skipped_exists", f"Conversation exists ({record.status.value})", sale_id, order_id)

        await self._store.append(
            sale_id,
            SaleEvent(
                EventType.SALE_REGISTERED,
                {
                    "order_id": order.id,
                    "seller_id": seller_id,
                    "buyer_id": order.buyer_id,
                    "product_key": product.key,
                    "product_title": order.item_title,
                    "status": ConversationStatus.NO_CONTACT.value,
                },
            ),
        )
        logger.info(f"Registered sale {sale_id} for order {order_id} ({product.key})")
        await self._notifier.notify("order", f"Nueva venta: {product.label} - {order.buyer_nickname or order.buyer_id}")
        self._activity.record("order", f"Nueva venta: {product.label}", f"Orden: {order_id} - Sale: {sale_id}")
        return OrderResult("registered", f"Sale registered for {product.label}", sale_id, order_id)

    async def simulate_latest(self) -> OrderResult:
        """Run intake on the newest paid order, forced."""
        seller_id = await self._marketplace.seller_id()
        orders = await self._marketplace.get_seller_orders(seller_id, limit=5)
        for order in orders:
            if order.status == "paid":
                logger.info(f"Simulating intake for order {order.id}")
                return await self.on_order_paid(order.id, force=True)
        return OrderResult("error", "No paid orders found")
