"""
Marketplace API client.

- Every call goes through _request(), which retries 429 responses with
  exponential backoff and raises RateLimitedError once the budget is spent.
- Calls that exist in more than one API version are written as an ordered
  list of strategies handed to first_success().
- Responses are normalized into the models in giftbot.schemas.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import httpx

from giftbot.auth import TokenManager
from giftbot.errors import AuthError, MarketplaceError, RateLimitedError
from giftbot.schemas import InboundMessage, Item, Order, PackMessage, Question, sort_messages
from giftbot.utils import chunk_text, extract_resource_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

Strategy = tuple[str, Callable[[], Awaitable[Optional[T]]]]


async def first_success(strategies: Sequence[Strategy]) -> Optional[T]:
    """
    Run strategies in order and return the first non-None result.

    A strategy that raises is logged and the next one is tried. When every
    strategy raised, the last error is re-raised; when at least one returned
    None and none produced a result, None is returned.
    """
    last_error: Optional[Exception] = None
    any_empty = False
    for name, strategy in strategies:
        try:
            result = await strategy()
        except (MarketplaceError, httpx.HTTPError) as e:
            logger.info(f"Strategy {name} failed: {e}")
            last_error = e
            continue
        if result is not None:
            logger.debug(f"Strategy {name} succeeded")
            return result
        any_empty = True
    if last_error is not None and not any_empty:
        raise last_error
    return None


class MarketplaceClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        tokens: TokenManager,
        api_url: str = "https://api.mercadolibre.com",
        max_retries: int = 3,
        backoff_cap: float = 8.0,
        message_char_limit: int = 350,
        send_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self.tokens = tokens
        self._api_url = api_url.rstrip("/")
        self._max_retries = max_retries
        self._backoff_cap = backoff_cap
        self.message_char_limit = message_char_limit
        self._send_delay = send_delay
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _backoff(self, attempt: int, response: httpx.Response) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return min(float(retry_after), self._backoff_cap)
            except ValueError:
                pass
        return min(2 ** attempt, self._backoff_cap)

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        url = path if path.startswith("http") else f"{self._api_url}{path}"

        for attempt in range(self._max_retries + 1):
            token = await self.tokens.get_access_token()
            response = await self._client.request(
                method,
                url,
                json=json,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/json",
                },
            )

            if response.status_code == 429:
                if attempt < self._max_retries:
                    wait = self._backoff(attempt, response)
                    logger.warning(
                        f"Marketplace rate limited on {method} {path}, retrying in {wait}s "
                        f"(attempt {attempt + 1}/{self._max_retries})"
                    )
                    await self._sleep(wait)
                    continue
                raise RateLimitedError(f"{method} {path} still rate limited after {self._max_retries} retries")

            if response.status_code >= 400:
                raise MarketplaceError(
                    f"{method} {path} failed ({response.status_code}): {response.text[:300]}",
                    status_code=response.status_code,
                )

            if not response.content:
                return {}
            return response.json()

        raise RateLimitedError(f"{method} {path} still rate limited after {self._max_retries} retries")

    async def seller_id(self) -> str:
        """Seller id of the authenticated account. Refreshes the token if needed."""
        await self.tokens.get_access_token()
        if not self.tokens.seller_id:
            raise AuthError("Seller id not available after authentication")
        return self.tokens.seller_id

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order:
        return Order.from_api(await self._request("GET", f"/orders/{order_id}"))

    async def get_sale_order(self, sale_id: str) -> Optional[Order]:
        """
        Order behind a sale id.

        A sale id is a pack id, or an order id for orders outside a pack.
        """
        async def from_pack():
            data = await self._request("GET", f"/packs/{sale_id}")
            orders = data.get("orders") or []
            if not orders:
                return None
            return await self.get_order(str(orders[0].get("id")))

        async def from_order():
            return await self.get_order(sale_id)

        return await first_success([("pack", from_pack), ("order", from_order)])

    async def get_seller_orders(self, seller_id: str, limit: int = 50, offset: int = 0) -> list[Order]:
        """Seller orders, newest first."""
        data = await self._request(
            "GET",
            f"/orders/search?seller={seller_id}&sort=date_desc&limit={limit}&offset={offset}",
        )
        return [Order.from_api(raw) for raw in data.get("results") or []]

    async def mark_shipment_delivered(self, shipment_id: str) -> None:
        await self._request(
            "PUT",
            f"/shipments/{shipment_id}",
            json={"status": "delivered", "substatus": "delivered_to_buyer"},
        )

    # -------------------------------------------------------------------------
    # Post-sale messages
    # -------------------------------------------------------------------------

    async def get_pack_messages(self, sale_id: str, seller_id: str) -> list[PackMessage]:
        """
        Full conversation for a sale, oldest first.

        The sale id may be an order id for orders outside a pack; the
        endpoints accept either. Returns [] when both endpoints fail.
        """
        async def new_endpoint():
            data = await self._request("GET", f"/marketplace/messages/packs/{sale_id}?tag=post_sale")
            raw = data.get("messages") or []
            return [PackMessage.from_api(m) for m in raw] or None

        async def legacy_endpoint():
            data = await self._request("GET", f"/messages/packs/{sale_id}/sellers/{seller_id}?tag=post_sale")
            return [PackMessage.from_api(m) for m in data.get("messages") or []]

        try:
            messages = await first_success([
                ("marketplace_messages", new_endpoint),
                ("legacy_messages", legacy_endpoint),
            ])
        except (MarketplaceError, httpx.HTTPError) as e:
            logger.error(f"Could not fetch messages for sale {sale_id}: {e}")
            return []
        return sort_messages(messages or [])

    async def init_conversation(self, sale_id: str, text: str) -> bool:
        """
        Open a conversation through the action guide.

        Some shipment types block free-form seller messages until a reason
        option is chosen. The OTHER option carries the text itself. Returns
        True when the text was sent this way.
        """
        guide = await self._request("GET", f"/messages/action_guide/packs/{sale_id}?tag=post_sale")
        options = guide.get("options") or []
        if not any(option.get("id") == "OTHER" for option in options):
            logger.info(f"No free-text action guide option for sale {sale_id}")
            return False
        await self._request(
            "POST",
            f"/messages/action_guide/packs/{sale_id}/option?tag=post_sale",
            json={"option_id": "OTHER", "text": text[: self.message_char_limit]},
        )
        logger.info(f"Conversation opened through action guide for sale {sale_id}")
        return True

    async def send_message(self, sale_id: str, seller_id: str, text: str, buyer_id: Optional[str] = None) -> None:
        """
        Send one post-sale message (truncated to the marketplace limit).

        Tries the current endpoint, then the legacy one, then the action
        guide. Raises the last error if none of them delivered the text.
        """
        truncated = text[: self.message_char_limit]

        async def new_endpoint():
            await self._request("POST", f"/marketplace/messages/packs/{sale_id}", json={"text": truncated})
            return True

        async def legacy_endpoint():
            body: dict = {"from": {"user_id": seller_id}, "text": truncated}
            if buyer_id:
                body["to"] = {"user_id": buyer_id}
            await self._request("POST", f"/messages/packs/{sale_id}/sellers/{seller_id}?tag=post_sale", json=body)
            return True

        async def action_guide():
            return True if await self.init_conversation(sale_id, truncated) else None

        sent = await first_success([
            ("marketplace_send", new_endpoint),
            ("legacy_send", legacy_endpoint),
            ("action_guide", action_guide),
        ])
        if not sent:
            raise MarketplaceError(f"No send path accepted the message for sale {sale_id}")
        logger.info(f"Message sent to sale {sale_id} ({len(truncated)} chars)")

    async def send_messages(
        self,
        sale_id: str,
        seller_id: str,
        texts: Sequence[str],
        buyer_id: Optional[str] = None,
    ) -> int:
        """
        Send several messages in order, chunking anything over the limit.

        Stops at the first chunk that cannot be sent and re-raises, so the
        caller does not record a burst that only partly went out.

        Returns:
            Number of chunks sent
        """
        chunks = [chunk for text in texts for chunk in chunk_text(text, self.message_char_limit)]
        for index, chunk in enumerate(chunks):
            if index > 0 and self._send_delay:
                await self._sleep(self._send_delay)
            await self.send_message(sale_id, seller_id, chunk, buyer_id)
        return len(chunks)

    async def get_message_by_resource(self, resource: str) -> Optional[InboundMessage]:
        """Look up the message a webhook notification points at."""
        message_id = extract_resource_id(resource)

        async def marketplace_lookup():
            data = await self._request("GET", f"/marketplace/messages/{message_id}")
            return InboundMessage.from_marketplace(data, message_id)

        async def legacy_lookup():
            data = await self._request("GET", f"/messages/{message_id}")
            return InboundMessage.from_legacy(data, message_id)

        async def raw_resource():
            data = await self._request("GET", resource)
            return InboundMessage.from_legacy(data, message_id)

        strategies: list = [("marketplace_lookup", marketplace_lookup), ("legacy_lookup", legacy_lookup)]
        if resource.startswith("/") and resource not in (f"/marketplace/messages/{message_id}", f"/messages/{message_id}"):
            strategies.append(("raw_resource", raw_resource))

        try:
            return await first_success(strategies)
        except (MarketplaceError, httpx.HTTPError) as e:
            logger.info(f"Message lookup failed for resource {resource}: {e}")
            return None

    # -------------------------------------------------------------------------
    # Questions and items
    # -------------------------------------------------------------------------

    async def get_question(self, question_id: str) -> Question:
        return Question.from_api(await self._request("GET", f"/questions/{question_id}"))

    async def answer_question(self, question_id: str, text: str) -> None:
        await self._request("POST", "/answers", json={"question_id": int(question_id), "text": text})

    async def get_item(self, item_id: str) -> Item:
        return Item.from_api(await self._request("GET", f"/items/{item_id}"))

    async def get_item_description(self, item_id: str) -> str:
        try:
            data = await self._request("GET", f"/items/{item_id}/description")
        except MarketplaceError as e:
            logger.info(f"No description for item {item_id}: {e}")
            return ""
        return str(data.get("plain_text") or "")
