"""
Pydantic schemas for request/response validation.

This module contains:
- Marketplace models: normalized shapes of marketplace API responses
- Request models for incoming webhooks and dashboard actions
- Response models for API responses
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Marketplace Models
# =============================================================================
#
# The marketplace answers with different field names depending on the API
# version behind each endpoint. Every raw payload goes through one of the
# from_api() adapters below; nothing past this point reads raw JSON.

def _user_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("user_id", value.get("id"))
    if value in (None, ""):
        return None
    return str(value)


def _parse_ts(value: Optional[str]) -> datetime:
    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class PackMessage(BaseModel):
    """One message of a post-sale conversation."""
    id: str = ""
    from_user_id: Optional[str] = None
    to_user_id: Optional[str] = None
    text: str = ""
    created_at: str = ""

    @classmethod
    def from_api(cls, raw: dict) -> "PackMessage":
        text = raw.get("text") or ""
        if isinstance(text, dict):
            text = text.get("plain") or ""
        return cls(
            id=str(raw.get("id") or raw.get("message_id") or ""),
            from_user_id=_user_id(raw.get("from")),
            to_user_id=_user_id(raw.get("to")),
            text=str(text),
            created_at=str(
                raw.get("created_at")
                or raw.get("date_created")
                or (raw.get("message_date") or {}).get("created")
                or ""
            ),
        )

    @property
    def created(self) -> datetime:
        return _parse_ts(self.created_at)


def sort_messages(messages: list[PackMessage]) -> list[PackMessage]:
    """Oldest first. The marketplace does not promise any order."""
    return sorted(messages, key=lambda m: m.created)


class Order(BaseModel):
    id: str
    status: str
    pack_id: Optional[str] = None
    buyer_id: Optional[str] = None
    buyer_nickname: str = ""
    item_id: Optional[str] = None
    item_title: str = ""
    shipping_id: Optional[str] = None

    @property
    def sale_id(self) -> str:
        """Pack id, or the order id for orders outside a pack."""
        return self.pack_id or self.id

    @classmethod
    def from_api(cls, raw: dict) -> "Order":
        items = raw.get("order_items") or []
        item = (items[0].get("item") or {}) if items else {}
        buyer = raw.get("buyer") or {}
        shipping = raw.get("shipping") or {}
        pack_id = raw.get("pack_id")
        shipping_id = shipping.get("id") if isinstance(shipping, dict) else None
        return cls(
            id=str(raw["id"]),
            status=str(raw.get("status") or ""),
            pack_id=str(pack_id) if pack_id else None,
            buyer_id=_user_id(buyer),
            buyer_nickname=str(buyer.get("nickname") or ""),
            item_id=str(item["id"]) if item.get("id") else None,
            item_title=str(item.get("title") or ""),
            shipping_id=str(shipping_id) if shipping_id else None,
        )


class Question(BaseModel):
    id: str
    text: str = ""
    item_id: str = ""
    status: str = ""
    seller_id: Optional[str] = None

    @property
    def answered(self) -> bool:
        return self.status.upper() == "ANSWERED"

    @classmethod
    def from_api(cls, raw: dict) -> "Question":
        return cls(
            id=str(raw["id"]),
            text=str(raw.get("text") or ""),
            item_id=str(raw.get("item_id") or ""),
            status=str(raw.get("status") or ""),
            seller_id=_user_id(raw.get("seller_id")),
        )


class Item(BaseModel):
    id: str
    title: str = ""

    @classmethod
    def from_api(cls, raw: dict) -> "Item":
        return cls(id=str(raw.get("id") or ""), title=str(raw.get("title") or ""))


_PACK_IN_RESOURCE = re.compile(r"/packs/(\d+)")


class InboundMessage(BaseModel):
    """A single message looked up from a webhook resource."""
    message_id: str
    pack_id: Optional[str] = None
    from_user_id: Optional[str] = None
    to_user_id: Optional[str] = None
    text: str = ""

    @classmethod
    def from_marketplace(cls, raw: dict, fallback_id: str) -> Optional["InboundMessage"]:
        """New API: {"messages": [{..., "message_resources": [{"name": "packs", "id": ...}]}]}"""
        messages = raw.get("messages") or []
        if not messages:
            return None
        msg = messages[0]
        pack_id = None
        for res in msg.get("message_resources") or []:
            if res.get("name") == "packs":
                pack_id = str(res.get("id"))
        return cls(
            message_id=str(msg.get("id") or msg.get("message_id") or fallback_id),
            pack_id=pack_id,
            from_user_id=_user_id(msg.get("from")),
            to_user_id=_user_id(msg.get("to")),
            text=str(msg.get("text") or ""),
        )

    @classmethod
    def from_legacy(cls, raw: dict, fallback_id: str) -> Optional["InboundMessage"]:
        """Legacy API: flat message with "resource": "/packs/123/seller/456"."""
        if not raw:
            return None
        pack_id = raw.get("pack_id")
        if not pack_id and isinstance(raw.get("resource"), str):
            match = _PACK_IN_RESOURCE.search(raw["resource"])
            pack_id = match.group(1) if match else None
        return cls(
            message_id=str(raw.get("message_id") or raw.get("id") or fallback_id),
            pack_id=str(pack_id) if pack_id else None,
            from_user_id=_user_id(raw.get("from")),
            to_user_id=_user_id(raw.get("to")),
            text=str(raw.get("text") or ""),
        )


# =============================================================================
# Pydantic Request Models
# =============================================================================

class WebhookNotification(BaseModel):
    """
    Marketplace notification envelope.

    Example:
        {"topic": "orders_v2", "resource": "/orders/2000003508", "user_id": 123,
         "application_id": 456, "attempts": 1}
    """
    topic: str = Field(..., min_length=1, description="Notification topic")
    resource: str = Field(..., min_length=1, description="Resource path, e.g. /orders/123")
    user_id: Optional[str] = Field(None, description="User the notification concerns")
    application_id: Optional[str] = Field(None, description="Marketplace application id")
    attempts: Optional[int] = Field(None, ge=0, description="Delivery attempt counter")
    sent: Optional[str] = None
    received: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("user_id", "application_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Optional[str]:
        """Ids arrive as numbers; keep them as strings."""
        if v is None or v == "":
            return None
        return str(v)


class LoadCodesRequest(BaseModel):
    codes: list[str] = Field(..., min_length=1, description="Redemption codes to add")


class ToggleRequest(BaseModel):
    enabled: Optional[bool] = Field(None, description="Explicit state; omitted flips the current one")


class DeliverRequest(BaseModel):
    order_id: Optional[str] = None
    shipment_id: Optional[str] = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Webhook acknowledgment. Always sent with HTTP 200."""
    status: str = Field(default="ok", description="ok, skipped, ignored or error")
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class SaleResponse(BaseModel):
    sale_id: str
    order_id: Optional[str] = None
    seller_id: Optional[str] = None
    buyer_id: Optional[str] = None
    product_key: Optional[str] = None
    product_title: str = ""
    status: str
    code_delivered: bool = False
    resend_attempts: int = 0
    last_buyer_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ChatsResponse(BaseModel):
    data: list[SaleResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class ChatDetailResponse(BaseModel):
    sale: Optional[SaleResponse] = None
    messages: list[PackMessage] = Field(default_factory=list)


class ActivityEntryResponse(BaseModel):
    id: str
    type: str
    message: str
    details: Optional[str] = None
    timestamp: str


class StatsCounts(BaseModel):
    total_orders: int = 0
    codes_delivered: int = 0
    pending_orders: int = 0
    human_requested: int = 0
    questions_answered: int = 0


class StatsResponse(BaseModel):
    """
    Dashboard summary.

    - authenticated / auth_error: marketplace token state
    - bot_enabled: whether webhooks are acted on
    - stats: conversation counters
    - recent_activity: newest activity entries
    """
    authenticated: bool
    auth_error: Optional[str] = None
    bot_enabled: bool
    stats: StatsCounts
    recent_activity: list[ActivityEntryResponse] = Field(default_factory=list)


class ProductStock(BaseModel):
    product_key: str
    label: str
    available: int = 0
    reserved: int = 0
    delivered: int = 0


class InventoryResponse(BaseModel):
    products: list[ProductStock] = Field(default_factory=list)


class LoadCodesResponse(BaseModel):
    product_key: str
    added: int
    skipped: int


class ToggleResponse(BaseModel):
    enabled: bool


class CheckMessagesResponse(BaseModel):
    status: str
    checked: int = 0
    processed: int = 0
    responded: int = 0


class OrderResultResponse(BaseModel):
    action: str
    message: str
    sale_id: Optional[str] = None
    order_id: Optional[str] = None


class DeliverResponse(BaseModel):
    success: bool
    shipment_id: Optional[str] = None
