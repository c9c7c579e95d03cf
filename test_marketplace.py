"""
Tests for the marketplace HTTP client, token refresh and operator alerts.

Requests are answered by an httpx.MockTransport, so nothing leaves the
process. Tests cover:
- 429 backoff (Retry-After honoured) and the retry budget
- Fallback from the current messaging endpoints to the legacy ones
- Webhook resource lookups
- OAuth refresh and its failure modes
- Telegram alerts for critical categories only
"""

import asyncio
import json

import httpx
import pytest

from giftbot.auth import TokenManager
from giftbot.errors import AuthError, ConfigurationError, MarketplaceError, RateLimitedError
from giftbot.marketplace import MarketplaceClient, first_success
from giftbot.notifier import TelegramNotifier


API = "https://api.test"


class StaticTokens:
    seller_id = "999"
    token_valid = True

    async def get_access_token(self):
        return "TOKEN"


class Router:
    """Maps (method, path) to a list of responses served in order."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    def __call__(self, request):
        self.requests.append(request)
        key = (request.method, request.url.raw_path.decode())
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(404, json={"message": "not found"})
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def paths(self, method=None):
        return [r.url.raw_path.decode() for r in self.requests if method is None or r.method == method]


def make_client(router, max_retries=3):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    http = httpx.AsyncClient(transport=httpx.MockTransport(router))
    client = MarketplaceClient(http, StaticTokens(), api_url=API, max_retries=max_retries, sleep=fake_sleep)
    return client, sleeps


class TestRateLimit:
    def test_retry_after_is_honoured(self):
        router = Router()
        router.add(
            "GET", "/orders/1",
            httpx.Response(429, headers={"Retry-After": "3"}),
            httpx.Response(429),
            httpx.Response(200, json={"id": 1, "status": "paid"}),
        )
        client, sleeps = make_client(router)

        order = asyncio.run(client.get_order("1"))

        assert order.status == "paid"
        assert sleeps == [3.0, 2]
        assert router.requests[0].headers["Authorization"] == "Bearer TOKEN"

    def test_budget_exhausted(self):
        router = Router()
        router.add("GET", "/orders/1", httpx.Response(429))
        client, sleeps = make_client(router, max_retries=2)

        with pytest.raises(RateLimitedError):
            asyncio.run(client.get_order("1"))
        assert len(router.requests) == 3
        assert sleeps == [1, 2]

    def test_error_status_raises(self):
        router = Router()
        router.add("GET", "/orders/1", httpx.Response(403, json={"message": "forbidden"}))
        client, _ = make_client(router)

        with pytest.raises(MarketplaceError) as exc:
            asyncio.run(client.get_order("1"))
        assert exc.value.status_code == 403


class TestMessaging:
    def test_send_falls_back_to_legacy(self):
        router = Router()
        router.add("POST", "/marketplace/messages/packs/P1", httpx.Response(403))
        router.add("POST", "/messages/packs/P1/sellers/999?tag=post_sale", httpx.Response(201, json={"id": "m1"}))
        client, _ = make_client(router)

        asyncio.run(client.send_message("P1", "999", "hola", buyer_id="111"))

        body = json.loads(router.requests[-1].content)
        assert body == {"from": {"user_id": "999"}, "to": {"user_id": "111"}, "text": "hola"}

    def test_send_uses_action_guide_last(self):
        router = Router()
        router.add("GET", "/messages/action_guide/packs/P1?tag=post_sale", httpx.Response(200, json={"options": [{"id": "OTHER"}]}))
        router.add("POST", "/messages/action_guide/packs/P1/option?tag=post_sale", httpx.Response(200, json={}))
        client, _ = make_client(router)

        asyncio.run(client.send_message("P1", "999", "hola"))

        assert json.loads(router.requests[-1].content) == {"option_id": "OTHER", "text": "hola"}

    def test_send_fails_when_every_path_fails(self):
        router = Router()
        router.add("GET", "/messages/action_guide/packs/P1?tag=post_sale", httpx.Response(200, json={"options": []}))
        client, _ = make_client(router)

        with pytest.raises(MarketplaceError):
            asyncio.run(client.send_message("P1", "999", "hola"))

    def test_long_text_is_chunked(self):
        router = Router()
        router.add("POST", "/marketplace/messages/packs/P1", httpx.Response(201, json={}))
        client, sleeps = make_client(router)

        sent = asyncio.run(client.send_messages("P1", "999", ["palabra " * 100, "corto"]))

        texts = [json.loads(r.content)["text"] for r in router.requests]
        assert sent == len(texts) == 4
        assert all(len(t) <= 350 for t in texts)
        assert texts[-1] == "corto"
        assert len(sleeps) == 3

    def test_pack_messages_legacy_fallback_sorted(self):
        router = Router()
        router.add("GET", "/marketplace/messages/packs/P1?tag=post_sale", httpx.Response(200, json={"messages": []}))
        router.add("GET", "/messages/packs/P1/sellers/999?tag=post_sale", httpx.Response(200, json={"messages": [
            {"id": "b", "from": {"user_id": 111}, "text": "listo", "date_created": "2025-01-15T10:05:00Z"},
            {"id": "a", "from": {"user_id": 999}, "text": {"plain": "hola"}, "date_created": "2025-01-15T10:00:00Z"},
        ]}))
        client, _ = make_client(router)

        messages = asyncio.run(client.get_pack_messages("P1", "999"))

        assert [m.id for m in messages] == ["a", "b"]
        assert messages[0].text == "hola"
        assert messages[0].from_user_id == "999"

    def test_pack_messages_empty_when_all_fail(self):
        client, _ = make_client(Router())
        assert asyncio.run(client.get_pack_messages("P1", "999")) == []


class TestResourceLookup:
    def test_marketplace_lookup(self):
        router = Router()
        router.add("GET", "/marketplace/messages/abc", httpx.Response(200, json={"messages": [{
            "id": "abc",
            "from": {"user_id": 111},
            "text": "listo",
            "message_resources": [{"name": "packs", "id": 2000001}],
        }]}))
        client, _ = make_client(router)

        message = asyncio.run(client.get_message_by_resource("/messages/abc"))

        assert message.pack_id == "2000001"
        assert message.from_user_id == "111"

    def test_legacy_lookup_reads_pack_from_resource(self):
        router = Router()
        router.add("GET", "/messages/abc", httpx.Response(200, json={
            "message_id": "abc",
            "from": {"user_id": 111},
            "resource": "/packs/2000002/sellers/999",
        }))
        client, _ = make_client(router)

        message = asyncio.run(client.get_message_by_resource("abc"))
        assert message.pack_id == "2000002"

    def test_lookup_failure_returns_none(self):
        client, _ = make_client(Router())
        assert asyncio.run(client.get_message_by_resource("/messages/abc")) is None


class TestSaleOrder:
    def test_pack_resolves_first_order(self):
        router = Router()
        router.add("GET", "/packs/P1", httpx.Response(200, json={"orders": [{"id": 77}]}))
        router.add("GET", "/orders/77", httpx.Response(200, json={"id": 77, "status": "paid", "pack_id": "P1"}))
        client, _ = make_client(router)

        order = asyncio.run(client.get_sale_order("P1"))
        assert order.id == "77"
        assert order.sale_id == "P1"

    def test_order_outside_pack(self):
        router = Router()
        router.add("GET", "/orders/55", httpx.Response(200, json={"id": 55, "status": "paid"}))
        client, _ = make_client(router)

        assert asyncio.run(client.get_sale_order("55")).sale_id == "55"


class TestFirstSuccess:
    def test_returns_first_result(self):
        async def boom():
            raise MarketplaceError("down")

        async def empty():
            return None

        async def value():
            return "ok"

        assert asyncio.run(first_success([("a", boom), ("b", empty), ("c", value)])) == "ok"
        assert asyncio.run(first_success([("a", boom), ("b", empty)])) is None
        with pytest.raises(MarketplaceError):
            asyncio.run(first_success([("a", boom), ("b", boom)]))


def token_manager(handler, **overrides):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs = dict(app_id="APP", client_secret="SECRET", refresh_token="TG-1")
    kwargs.update(overrides)
    return TokenManager(http, API, **kwargs)


class TestTokenManager:
    def test_refresh_and_cache(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={
                "access_token": "APP_USR-1",
                "expires_in": 21600,
                "refresh_token": "TG-2",
                "user_id": 999,
            })

        tokens = token_manager(handler)

        async def scenario():
            first = await tokens.get_access_token()
            second = await tokens.get_access_token()
            return first, second

        assert asyncio.run(scenario()) == ("APP_USR-1", "APP_USR-1")
        assert len(calls) == 1
        assert b"grant_type=refresh_token" in calls[0].content
        assert tokens.seller_id == "999"
        assert tokens.token_valid

    def test_invalid_grant(self):
        tokens = token_manager(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(AuthError, match="invalid_grant"):
            asyncio.run(tokens.get_access_token())
        assert not tokens.token_valid

    def test_missing_credentials(self):
        tokens = token_manager(lambda request: httpx.Response(200), refresh_token=None)
        with pytest.raises(ConfigurationError):
            asyncio.run(tokens.get_access_token())


class TestTelegramNotifier:
    def test_critical_category_is_posted(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = TelegramNotifier("BOT", "42", client=http)

        assert asyncio.run(notifier.notify("stock", "Sin codigos para roblox-400")) is True
        body = json.loads(requests[0].content)
        assert body["chat_id"] == "42"
        assert body["text"].startswith("SIN STOCK")

    def test_non_critical_is_only_logged(self):
        requests = []
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: requests.append(r) or httpx.Response(200)))
        notifier = TelegramNotifier("BOT", "42", client=http)

        assert asyncio.run(notifier.notify("order", "Nueva venta")) is True
        assert requests == []

    def test_failures_never_raise(self):
        def handler(request):
            raise httpx.ConnectError("unreachable")

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        assert asyncio.run(TelegramNotifier("BOT", "42", client=http).notify("auth", "x")) is False
        assert asyncio.run(TelegramNotifier(None, None).notify("auth", "x")) is False
