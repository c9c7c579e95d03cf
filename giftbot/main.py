import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, HTTPException, status, Query
from pydantic import ValidationError
from sqlalchemy.orm import Session

from giftbot.bot import GiftBot, build_bot
from giftbot.config import settings
from giftbot.errors import AuthError, ConfigurationError, MarketplaceError
from giftbot.storage import init_db, check_db_health, get_db, add_codes, get_inventory_counts
from giftbot.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from giftbot.utils import verify_application_id
from giftbot.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from giftbot.products import PRODUCTS, get_product
from giftbot.schemas import (
    ActivityEntryResponse,
    ChatDetailResponse,
    ChatsResponse,
    CheckMessagesResponse,
    DeliverRequest,
    DeliverResponse,
    HealthResponse,
    InventoryResponse,
    LoadCodesRequest,
    LoadCodesResponse,
    OrderResultResponse,
    ProductStock,
    SaleResponse,
    StatsCounts,
    StatsResponse,
    ToggleRequest,
    ToggleResponse,
    WebhookNotification,
    WebhookResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and build the bot
    - Shutdown: Close outbound HTTP connections
    """
    init_db()
    app.state.bot = build_bot(settings)
    yield
    await app.state.bot.aclose()


app = FastAPI(
    title="Gift Card Bot",
    description="Post-sale automation for digital gift cards sold on Mercado Libre",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


def get_bot(request: Request) -> GiftBot:
    """Dependency returning the bot built at startup."""
    return request.app.state.bot


def _upstream_error(e: Exception) -> HTTPException:
    if isinstance(e, (AuthError, ConfigurationError)):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    inventory and event tables exist. Otherwise returns 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhook", response_model=WebhookResponse)
async def webhook_verify() -> WebhookResponse:
    """The marketplace sends a GET to verify the notification URL."""
    return WebhookResponse(status="active")


@app.post("/webhook", response_model=WebhookResponse)
async def webhook(request: Request, bot: GiftBot = Depends(get_bot)) -> WebhookResponse:
    """
    Receive a marketplace notification.

    Always answers 200 so the marketplace does not retry-storm; failures are
    reported in the body and pushed to the operator instead.

    Topics:
        - orders_v2 / orders: register a paid order
        - messages: answer the buyer
        - questions: answer a pre-sale question
    """
    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    try:
        notification = WebhookNotification.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Invalid notification payload: {e}")
        record_webhook_outcome("invalid", "validation_error")
        log_webhook_data(request=request, result="validation_error")
        return WebhookResponse(status="error", detail="invalid payload")

    topic = notification.topic
    logger.info(f"Webhook received: topic={topic}, resource={notification.resource}")

    if not verify_application_id(notification.application_id, settings.ML_APP_ID):
        record_webhook_outcome(topic, "ignored")
        log_webhook_data(request=request, topic=topic, resource=notification.resource, result="ignored")
        return WebhookResponse(status="ignored", detail="foreign application")

    result, detail = await bot.handle_notification(notification)

    record_webhook_outcome(topic, result)
    log_webhook_data(request=request, topic=topic, resource=notification.resource, result=result)
    return WebhookResponse(status=result, detail=detail)


@app.post("/webhook/simulate", response_model=OrderResultResponse)
async def webhook_simulate(bot: GiftBot = Depends(get_bot)) -> OrderResultResponse:
    """Run order intake on the newest paid order, ignoring existing state."""
    try:
        result = await bot.orders.simulate_latest()
    except (AuthError, ConfigurationError, MarketplaceError) as e:
        raise _upstream_error(e)
    return OrderResultResponse(**result.to_dict())


@app.post("/check-messages", response_model=CheckMessagesResponse)
async def check_messages(
    limit: Annotated[int | None, Query(ge=1, le=50, description="Recent orders to sweep")] = None,
    bot: GiftBot = Depends(get_bot),
) -> CheckMessagesResponse:
    """Sweep recent paid orders for unanswered buyer messages."""
    try:
        counts = await bot.check_messages(limit)
    except (AuthError, ConfigurationError, MarketplaceError) as e:
        raise _upstream_error(e)
    return CheckMessagesResponse(status="ok", **counts)


# =============================================================================
# Dashboard Routes
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(bot: GiftBot = Depends(get_bot)) -> StatsResponse:
    """
    Dashboard summary.

    Response:
        - authenticated / auth_error: marketplace token state
        - bot_enabled: whether notifications are acted on
        - stats: conversation counters
        - recent_activity: newest activity entries
    """
    stats = await bot.stats()
    logger.info(f"GET /stats: {stats['stats']['total_orders']} tracked sales")
    return StatsResponse(
        authenticated=stats["authenticated"],
        auth_error=stats["auth_error"],
        bot_enabled=stats["bot_enabled"],
        stats=StatsCounts(**stats["stats"]),
        recent_activity=[ActivityEntryResponse(**entry) for entry in stats["recent_activity"]],
    )


@app.get("/chats", response_model=ChatsResponse)
async def list_chats(
    limit: Annotated[int, Query(ge=1, le=500, description="Maximum number of sales to return")] = 100,
    bot: GiftBot = Depends(get_bot),
) -> ChatsResponse:
    """Tracked sales, most recently updated first."""
    records = await bot.chats(limit)
    data = [SaleResponse(**record.to_dict()) for record in records]
    return ChatsResponse(data=data, total=len(data))


@app.get("/chats/{sale_id}", response_model=ChatDetailResponse)
async def chat_detail(sale_id: str, bot: GiftBot = Depends(get_bot)) -> ChatDetailResponse:
    """A sale's record and its full message history."""
    try:
        record, messages = await bot.chat_detail(sale_id)
    except (AuthError, ConfigurationError, MarketplaceError) as e:
        raise _upstream_error(e)
    return ChatDetailResponse(
        sale=SaleResponse(**record.to_dict()) if record else None,
        messages=messages,
    )


@app.post("/chats/{sale_id}/deliver", response_model=DeliverResponse)
async def deliver_shipment(
    sale_id: str,
    body: DeliverRequest,
    bot: GiftBot = Depends(get_bot),
) -> DeliverResponse:
    """Mark a sale's shipment delivered by hand."""
    try:
        shipment_id = await bot.mark_delivered(sale_id, order_id=body.order_id, shipment_id=body.shipment_id)
    except (AuthError, ConfigurationError, MarketplaceError) as e:
        raise _upstream_error(e)
    if shipment_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No shipment found for this sale"
        )
    return DeliverResponse(success=True, shipment_id=shipment_id)


@app.post("/bot/toggle", response_model=ToggleResponse)
async def toggle_bot(body: ToggleRequest, bot: GiftBot = Depends(get_bot)) -> ToggleResponse:
    """Pause or resume automatic handling of notifications."""
    return ToggleResponse(enabled=bot.toggle(body.enabled))


# =============================================================================
# Inventory Routes
# =============================================================================

@app.get("/inventory", response_model=InventoryResponse)
async def inventory(db: Session = Depends(get_db)) -> InventoryResponse:
    """Code counts per product and status."""
    counts = get_inventory_counts(db)
    products = [
        ProductStock(product_key=product.key, label=product.label, **counts.get(product.key, {}))
        for product in PRODUCTS
    ]
    return InventoryResponse(products=products)


@app.post("/inventory/{product_key}", response_model=LoadCodesResponse)
async def load_codes(
    product_key: str,
    body: LoadCodesRequest,
    db: Session = Depends(get_db),
) -> LoadCodesResponse:
    """Add redemption codes for a product. Codes already stored are skipped."""
    if get_product(product_key) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown product: {product_key}"
        )
    added, skipped = add_codes(db, product_key, body.codes)
    logger.info(f"Loaded {added} {product_key} codes ({skipped} skipped)")
    return LoadCodesResponse(product_key=product_key, added=added, skipped=skipped)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - webhook_requests_total: Webhook outcomes by topic and result
    - conversation_actions_total, codes_delivered_total, escalations_total
    - request_latency_seconds: Request latency histogram
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
