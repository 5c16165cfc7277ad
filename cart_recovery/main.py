from __future__ import annotations

import json
import logging
import math
from collections.abc import AsyncIterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import ORJSONResponse

from cart_recovery import activity
from cart_recovery.activity import ActivityEvent, ActivityRecorder
from cart_recovery.config import settings
from cart_recovery.db import SessionLocal, init_db
from cart_recovery.enums import ActivitySeverityEnum, ActivityTypeEnum, CartStatusEnum, WebhookTopic
from cart_recovery.models import Activity, Cart, Shop
from cart_recovery.reconcile import CartReconciler
from cart_recovery.schemas import (
    ActivityListResponse,
    ActivityResponse,
    ActivityStatsResponse,
    CartLineItem,
    CartListResponse,
    CartResponse,
    CreateActivityRequest,
    Pagination,
    ReconcileSummary,
    RecoveryStatsResponse,
    SyncCartsRequest,
    UpdateCartStatusRequest,
    WebhookSetupResponse,
    WebhookSubscriptionStatus,
)
from cart_recovery.security import (
    WebhookSignatureVerifier,
    normalize_shop_domain,
    require_internal_api_token,
)
from cart_recovery.shopify_api import ShopifyApiClient, ShopifyApiError
from cart_recovery.store import CartStore, CartStoreUnavailableError, ProcessedEventStore, ShopStore
from cart_recovery.webhooks import UnsupportedWebhookTopicError, WebhookProcessor, parse_topic

logger = logging.getLogger(__name__)

shopify_api = ShopifyApiClient()
webhook_verifier = WebhookSignatureVerifier(settings.SHOPIFY_APP_API_SECRET)
cart_store = CartStore(SessionLocal)
shop_store = ShopStore(SessionLocal)
processed_events = ProcessedEventStore(SessionLocal)
activity_recorder = ActivityRecorder(SessionLocal)
webhook_processor = WebhookProcessor(carts=cart_store, shops=shop_store, recorder=activity_recorder)
cart_reconciler = CartReconciler(
    carts=cart_store,
    source=shopify_api,
    recorder=activity_recorder,
    max_limit=settings.CART_SYNC_MAX_LIMIT,
)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    init_db()
    if settings.ACTIVITY_RECORDER_WORKERS > 0:
        activity_recorder.start(
            ThreadPoolExecutor(
                max_workers=settings.ACTIVITY_RECORDER_WORKERS,
                thread_name_prefix="activity-recorder",
            )
        )
    try:
        yield
    finally:
        activity_recorder.shutdown(wait=True)


app = FastAPI(title="Cart Recovery Service", default_response_class=ORJSONResponse, lifespan=lifespan)


@app.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


def _normalize_shop_or_400(shop_domain: str | None) -> str:
    try:
        return normalize_shop_domain(shop_domain or "")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _store_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Cart store is temporarily unavailable",
    )


def _resolve_active_shop(shop_domain: str) -> Shop:
    normalized_shop = _normalize_shop_or_400(shop_domain)
    try:
        shop = shop_store.get_active_shop(normalized_shop)
    except CartStoreUnavailableError as exc:
        raise _store_unavailable() from exc
    if not shop:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active shop found for shopDomain={normalized_shop}",
        )
    return shop


def _serialize_cart(cart: Cart) -> CartResponse:
    return CartResponse(
        id=cart.id,
        shopDomain=cart.shop_domain,
        cartToken=cart.cart_token,
        customerId=cart.customer_id,
        customerEmail=cart.customer_email,
        customerFirstName=cart.customer_first_name,
        customerLastName=cart.customer_last_name,
        items=[CartLineItem.model_validate(item) for item in cart.items or []],
        totalItems=cart.total_items,
        totalPriceCents=cart.total_price_cents,
        reportedTotalPriceCents=cart.reported_total_price_cents,
        currency=cart.currency,
        status=CartStatusEnum(cart.status),
        abandonedAt=cart.abandoned_at,
        recoveredAt=cart.recovered_at,
        recoveredOrderId=cart.recovered_order_id,
        recoveryAttempts=cart.recovery_attempts,
        lastRecoveryAttemptAt=cart.last_recovery_attempt_at,
        recoveryUrl=cart.recovery_url,
        notes=cart.notes,
        createdAt=cart.created_at,
        updatedAt=cart.updated_at,
    )


def _serialize_activity(item: Activity) -> ActivityResponse:
    return ActivityResponse(
        id=item.id,
        shopDomain=item.shop_domain,
        eventType=ActivityTypeEnum(item.event_type),
        title=item.title,
        description=item.description,
        metadata=item.metadata_json or {},
        severity=ActivitySeverityEnum(item.severity),
        createdAt=item.created_at,
    )


@app.post("/webhooks/{topic:path}")
async def receive_webhook(topic: str, request: Request):
    body = await request.body()
    if not webhook_verifier.verify(body=body, supplied_hmac=request.headers.get("x-shopify-hmac-sha256")):
        # Acknowledge anyway; repeated failures make the sender disable the subscription.
        logger.warning(
            "webhooks.signature_rejected",
            extra={"topic": topic, "shop_header": request.headers.get("x-shopify-shop-domain")},
        )
        return {"received": True, "rejected": True}

    try:
        webhook_topic = parse_topic(topic)
    except UnsupportedWebhookTopicError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    header_topic = request.headers.get("x-shopify-topic")
    if header_topic and header_topic.strip().lower() != webhook_topic.value:
        logger.warning(
            "webhooks.topic_mismatch",
            extra={"topic": webhook_topic.value, "header_topic": header_topic},
        )
        return {"received": True, "ignored": True}

    shop_header = request.headers.get("x-shopify-shop-domain")
    if not shop_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing x-shopify-shop-domain header",
        )
    shop_domain = _normalize_shop_or_400(shop_header)
    event_id = (request.headers.get("x-shopify-event-id") or "").strip() or None

    try:
        if event_id and processed_events.is_processed(shop_domain, webhook_topic.value, event_id):
            return {"received": True, "duplicate": True}

        try:
            payload = json.loads(body)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            logger.warning("webhooks.invalid_json", extra={"topic": webhook_topic.value, "shop_domain": shop_domain})
            return {"received": True, "ignored": True}

        outcome = webhook_processor.handle(webhook_topic, shop_domain, payload)
        if event_id:
            processed_events.mark_processed(shop_domain, webhook_topic.value, event_id, outcome.as_status())
    except CartStoreUnavailableError as exc:
        logger.error(
            "webhooks.store_unavailable",
            extra={"topic": webhook_topic.value, "shop_domain": shop_domain, "error": str(exc)},
        )
        raise _store_unavailable() from exc

    return {"received": True}


@app.get(
    "/v1/carts",
    response_model=CartListResponse,
    dependencies=[Depends(require_internal_api_token)],
)
def list_carts(
    shopDomain: str,
    cart_status: CartStatusEnum = Query(default=CartStatusEnum.abandoned, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
):
    shop = _resolve_active_shop(shopDomain)
    try:
        carts, total = cart_store.list_carts(shop.shop_domain, status=cart_status, page=page, limit=limit)
    except CartStoreUnavailableError as exc:
        raise _store_unavailable() from exc

    return CartListResponse(
        shopDomain=shop.shop_domain,
        carts=[_serialize_cart(cart) for cart in carts],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            totalPages=math.ceil(total / limit),
            hasNext=page * limit < total,
            hasPrev=page > 1,
        ),
    )


@app.get(
    "/v1/carts/stats/recovery",
    response_model=RecoveryStatsResponse,
    dependencies=[Depends(require_internal_api_token)],
)
def cart_recovery_stats(shopDomain: str, days: int = Query(default=30, ge=1, le=365)):
    shop = _resolve_active_shop(shopDomain)
    try:
        stats = cart_store.recovery_stats(shop.shop_domain, days=days)
    except CartStoreUnavailableError as exc:
        raise _store_unavailable() from exc
    return RecoveryStatsResponse(shopDomain=shop.shop_domain, periodDays=days, **stats)


@app.post(
    "/v1/carts/sync",
    response_model=ReconcileSummary,
    dependencies=[Depends(require_internal_api_token)],
)
async def sync_carts(shopDomain: str, payload: SyncCartsRequest | None = None):
    shop = _resolve_active_shop(shopDomain)
    if not shop.admin_access_token:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Shop is missing an Admin API access token",
        )

    limit = settings.CART_SYNC_DEFAULT_LIMIT
    if payload is not None and payload.limit is not None:
        limit = payload.limit
    if limit > settings.CART_SYNC_MAX_LIMIT:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"limit must be <= {settings.CART_SYNC_MAX_LIMIT}",
        )

    try:
        return await cart_reconciler.reconcile(shop, limit=limit)
    except ShopifyApiError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@app.get(
    "/v1/carts/{cart_id}",
    response_model=CartResponse,
    dependencies=[Depends(require_internal_api_token)],
)
def get_cart(cart_id: int, shopDomain: str):
    shop = _resolve_active_shop(shopDomain)
    try:
        cart = cart_store.get_cart(shop.shop_domain, cart_id)
    except CartStoreUnavailableError as exc:
        raise _store_unavailable() from exc
    if not cart:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cart not found")
    return _serialize_cart(cart)


@app.patch(
    "/v1/carts/{cart_id}/status",
    response_model=CartResponse,
    dependencies=[Depends(require_internal_api_token)],
)
def update_cart_status(cart_id: int, shopDomain: str, payload: UpdateCartStatusRequest):
    shop = _resolve_active_shop(shopDomain)
    try:
        cart = cart_store.update_status(shop.shop_domain, cart_id, payload.status)
    except CartStoreUnavailableError as exc:
        raise _store_unavailable() from exc
    if not cart:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cart not found")
    return _serialize_cart(cart)


@app.delete(
    "/v1/carts/{cart_id}",
    dependencies=[Depends(require_internal_api_token)],
)
def delete_cart(cart_id: int, shopDomain: str):
    shop = _resolve_active_shop(shopDomain)
    try:
        deleted = cart_store.delete_cart(shop.shop_domain, cart_id)
    except CartStoreUnavailableError as exc:
        raise _store_unavailable() from exc
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cart not found")
    return {"deleted": True}


@app.get(
    "/v1/activities",
    response_model=ActivityListResponse,
    dependencies=[Depends(require_internal_api_token)],
)
def list_activities(shopDomain: str, limit: int = Query(default=10, ge=1, le=100)):
    shop = _resolve_active_shop(shopDomain)
    try:
        items = activity_recorder.list_recent(shop.shop_domain, limit=limit)
    except CartStoreUnavailableError as exc:
        raise _store_unavailable() from exc
    return ActivityListResponse(
        shopDomain=shop.shop_domain,
        activities=[_serialize_activity(item) for item in items],
    )


@app.post(
    "/v1/activities",
    response_model=ActivityResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_api_token)],
)
def create_activity(shopDomain: str, payload: CreateActivityRequest):
    shop = _resolve_active_shop(shopDomain)
    event = ActivityEvent(
        shop_domain=shop.shop_domain,
        event_type=payload.eventType,
        title=payload.title,
        description=payload.description,
        metadata=payload.metadata,
        severity=payload.severity,
    )
    try:
        item = activity_recorder.create(event)
    except CartStoreUnavailableError as exc:
        raise _store_unavailable() from exc
    return _serialize_activity(item)


@app.get(
    "/v1/activities/stats",
    response_model=ActivityStatsResponse,
    dependencies=[Depends(require_internal_api_token)],
)
def activity_stats(shopDomain: str, days: int = Query(default=30, ge=1, le=365)):
    shop = _resolve_active_shop(shopDomain)
    try:
        counts = activity_recorder.stats(shop.shop_domain, days=days)
    except CartStoreUnavailableError as exc:
        raise _store_unavailable() from exc
    return ActivityStatsResponse(shopDomain=shop.shop_domain, periodDays=days, counts=counts)


def _webhook_callback_url(topic: WebhookTopic) -> str:
    return f"{settings.app_base_url}/webhooks/{topic.value}"


async def _register_required_webhooks(*, shop: Shop) -> list[WebhookSubscriptionStatus]:
    statuses: list[WebhookSubscriptionStatus] = []
    for topic in WebhookTopic:
        try:
            webhook_id = await shopify_api.register_webhook(
                shop_domain=shop.shop_domain,
                access_token=shop.admin_access_token,
                topic=topic.value,
                callback_url=_webhook_callback_url(topic),
            )
        except ShopifyApiError as exc:
            logger.warning(
                "webhooks.registration_failed",
                extra={"shop_domain": shop.shop_domain, "topic": topic.value, "error": str(exc)},
            )
            statuses.append(WebhookSubscriptionStatus(topic=topic.value, status="failed", error=str(exc)))
            continue
        statuses.append(WebhookSubscriptionStatus(topic=topic.value, status="created", webhookId=webhook_id))
    return statuses


@app.post(
    "/v1/webhooks/setup",
    response_model=WebhookSetupResponse,
    dependencies=[Depends(require_internal_api_token)],
)
async def setup_webhooks(shopDomain: str):
    shop = _resolve_active_shop(shopDomain)
    statuses = await _register_required_webhooks(shop=shop)
    created = sum(1 for item in statuses if item.status == "created")
    activity_recorder.record(
        activity.webhooks_setup(shop.shop_domain, created=created, failed=len(statuses) - created)
    )
    return WebhookSetupResponse(shopDomain=shop.shop_domain, webhooks=statuses)


@app.get(
    "/v1/webhooks/status",
    response_model=WebhookSetupResponse,
    dependencies=[Depends(require_internal_api_token)],
)
async def webhook_status(shopDomain: str):
    shop = _resolve_active_shop(shopDomain)
    try:
        registered = await shopify_api.list_webhooks(
            shop_domain=shop.shop_domain,
            access_token=shop.admin_access_token,
        )
    except ShopifyApiError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    statuses: list[WebhookSubscriptionStatus] = []
    for topic in WebhookTopic:
        callback_url = _webhook_callback_url(topic)
        match = next(
            (
                webhook
                for webhook in registered
                if webhook.get("topic") == topic.value
                and str(webhook.get("address") or "").rstrip("/") == callback_url
            ),
            None,
        )
        statuses.append(
            WebhookSubscriptionStatus(
                topic=topic.value,
                status="active" if match else "missing",
                webhookId=str(match["id"]) if match and match.get("id") is not None else None,
            )
        )
    return WebhookSetupResponse(shopDomain=shop.shop_domain, webhooks=statuses)
