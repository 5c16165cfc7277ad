from __future__ import annotations

import base64
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

import cart_recovery.main as main_module
from cart_recovery.config import settings
from cart_recovery.models import Activity, Cart, ProcessedWebhookEvent, Shop
from cart_recovery.shopify_api import ShopifyApiError
from cart_recovery.store import CartStoreUnavailableError

SHOP_DOMAIN = "example.myshopify.com"
AUTH_HEADERS = {"Authorization": "Bearer internal_token"}


def _signed_headers(body: bytes, *, topic: str, event_id: str | None = None) -> dict[str, str]:
    digest = hmac.new(settings.SHOPIFY_APP_API_SECRET.encode("utf-8"), body, hashlib.sha256).digest()
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Hmac-Sha256": base64.b64encode(digest).decode("utf-8"),
        "X-Shopify-Shop-Domain": SHOP_DOMAIN,
        "X-Shopify-Topic": topic,
    }
    if event_id:
        headers["X-Shopify-Event-Id"] = event_id
    return headers


def _post_webhook(client: TestClient, topic: str, payload: dict, *, event_id: str | None = None):
    body = json.dumps(payload).encode("utf-8")
    return client.post(f"/webhooks/{topic}", content=body, headers=_signed_headers(body, topic=topic, event_id=event_id))


def _cart_count(db_session) -> int:
    return db_session.scalar(select(func.count()).select_from(Cart))


@pytest.fixture()
def api_client(db_session):
    with TestClient(main_module.app) as client:
        yield client


def test_health(api_client):
    response = api_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_signed_checkout_webhook_creates_cart(api_client, db_session, checkout_payload):
    response = _post_webhook(api_client, "checkouts/create", checkout_payload())

    assert response.status_code == 200
    assert response.json() == {"received": True}
    cart = db_session.scalars(select(Cart)).one()
    assert cart.cart_token == "checkout-token-1"
    assert cart.total_price_cents == 2500


def test_tampered_webhook_is_acknowledged_but_not_applied(api_client, db_session, checkout_payload):
    signed = json.dumps(checkout_payload()).encode("utf-8")
    tampered = json.dumps(checkout_payload(prices=("0.01",))).encode("utf-8")

    response = api_client.post(
        "/webhooks/checkouts/create",
        content=tampered,
        headers=_signed_headers(signed, topic="checkouts/create"),
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "rejected": True}
    assert _cart_count(db_session) == 0


def test_unknown_webhook_topic_returns_404(api_client, db_session):
    response = _post_webhook(api_client, "products/update", {"id": 1})

    assert response.status_code == 404


def test_webhook_without_shop_header_returns_400(api_client, db_session, checkout_payload):
    body = json.dumps(checkout_payload()).encode("utf-8")
    headers = _signed_headers(body, topic="checkouts/create")
    headers.pop("X-Shopify-Shop-Domain")

    response = api_client.post("/webhooks/checkouts/create", content=body, headers=headers)

    assert response.status_code == 400


def test_webhook_topic_header_mismatch_is_ignored(api_client, db_session, checkout_payload):
    body = json.dumps(checkout_payload()).encode("utf-8")

    response = api_client.post(
        "/webhooks/checkouts/create",
        content=body,
        headers=_signed_headers(body, topic="orders/create"),
    )

    assert response.json() == {"received": True, "ignored": True}
    assert _cart_count(db_session) == 0


def test_webhook_with_non_object_body_is_ignored(api_client, db_session):
    body = b"[1, 2, 3]"

    response = api_client.post(
        "/webhooks/checkouts/create",
        content=body,
        headers=_signed_headers(body, topic="checkouts/create"),
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "ignored": True}


def test_duplicate_event_id_short_circuits(api_client, db_session, checkout_payload):
    first = _post_webhook(api_client, "checkouts/create", checkout_payload(), event_id="evt-1")
    second = _post_webhook(api_client, "checkouts/create", checkout_payload(), event_id="evt-1")

    assert first.json() == {"received": True}
    assert second.json() == {"received": True, "duplicate": True}
    processed = db_session.scalars(select(ProcessedWebhookEvent)).one()
    assert processed.status == "created"
    assert _cart_count(db_session) == 1


def test_store_failure_returns_503_for_redelivery(api_client, db_session, checkout_payload, monkeypatch):
    def unavailable(*args, **kwargs):
        raise CartStoreUnavailableError("database is locked")

    monkeypatch.setattr(main_module.webhook_processor, "handle", unavailable)

    response = _post_webhook(api_client, "checkouts/create", checkout_payload(), event_id="evt-2")

    assert response.status_code == 503
    assert db_session.scalar(select(func.count()).select_from(ProcessedWebhookEvent)) == 0


def test_order_webhook_recovers_cart(api_client, db_session, checkout_payload):
    _post_webhook(api_client, "checkouts/create", checkout_payload())

    response = _post_webhook(api_client, "orders/create", {"id": 9001, "email": "jane@example.com"})

    assert response.status_code == 200
    cart = db_session.scalars(select(Cart)).one()
    assert cart.status == "recovered"
    assert cart.recovered_order_id == "9001"


def test_app_uninstalled_webhook_deactivates_shop(api_client, shop, db_session):
    _post_webhook(api_client, "app/uninstalled", {"domain": SHOP_DOMAIN})

    db_session.expire_all()
    refreshed = db_session.scalars(select(Shop).where(Shop.shop_domain == SHOP_DOMAIN)).one()
    assert refreshed.is_active is False
    assert refreshed.admin_access_token == ""


def test_cart_endpoints_require_bearer_token(api_client, shop):
    missing = api_client.get("/v1/carts", params={"shopDomain": SHOP_DOMAIN})
    wrong = api_client.get(
        "/v1/carts",
        params={"shopDomain": SHOP_DOMAIN},
        headers={"Authorization": "Bearer wrong"},
    )

    assert missing.status_code == 401
    assert wrong.status_code == 403


def test_list_and_get_carts(api_client, shop, checkout_payload):
    _post_webhook(api_client, "checkouts/create", checkout_payload(token="a"))
    _post_webhook(api_client, "checkouts/create", checkout_payload(token="b"))

    listed = api_client.get("/v1/carts", params={"shopDomain": SHOP_DOMAIN, "limit": 1}, headers=AUTH_HEADERS)

    assert listed.status_code == 200
    payload = listed.json()
    assert payload["pagination"] == {
        "page": 1,
        "limit": 1,
        "total": 2,
        "totalPages": 2,
        "hasNext": True,
        "hasPrev": False,
    }
    cart = payload["carts"][0]
    assert cart["cartToken"] == "b"
    assert cart["totalPriceCents"] == 2500
    assert cart["items"][0]["priceCents"] == 1000

    fetched = api_client.get(f"/v1/carts/{cart['id']}", params={"shopDomain": SHOP_DOMAIN}, headers=AUTH_HEADERS)
    assert fetched.json()["cartToken"] == "b"


def test_unknown_shop_returns_404(api_client, db_session):
    response = api_client.get("/v1/carts", params={"shopDomain": SHOP_DOMAIN}, headers=AUTH_HEADERS)

    assert response.status_code == 404


def test_invalid_shop_domain_returns_400(api_client, db_session):
    response = api_client.get("/v1/carts", params={"shopDomain": "example.com"}, headers=AUTH_HEADERS)

    assert response.status_code == 400


def test_update_status_and_stats(api_client, shop, checkout_payload):
    _post_webhook(api_client, "checkouts/create", checkout_payload(token="a"))
    _post_webhook(api_client, "checkouts/create", checkout_payload(token="b"))
    cart_id = api_client.get("/v1/carts", params={"shopDomain": SHOP_DOMAIN}, headers=AUTH_HEADERS).json()["carts"][0]["id"]

    updated = api_client.patch(
        f"/v1/carts/{cart_id}/status",
        params={"shopDomain": SHOP_DOMAIN},
        json={"status": "recovered"},
        headers=AUTH_HEADERS,
    )
    stats = api_client.get("/v1/carts/stats/recovery", params={"shopDomain": SHOP_DOMAIN}, headers=AUTH_HEADERS)

    assert updated.status_code == 200
    assert updated.json()["status"] == "recovered"
    assert updated.json()["recoveredAt"] is not None
    body = stats.json()
    assert body["totalAbandoned"] == 1
    assert body["totalRecovered"] == 1
    assert body["recoveryRate"] == 50.0


def test_delete_cart(api_client, shop, db_session, checkout_payload):
    _post_webhook(api_client, "checkouts/create", checkout_payload())
    cart_id = db_session.scalars(select(Cart)).one().id

    deleted = api_client.delete(f"/v1/carts/{cart_id}", params={"shopDomain": SHOP_DOMAIN}, headers=AUTH_HEADERS)
    missing = api_client.delete(f"/v1/carts/{cart_id}", params={"shopDomain": SHOP_DOMAIN}, headers=AUTH_HEADERS)

    assert deleted.json() == {"deleted": True}
    assert missing.status_code == 404


def test_sync_carts_backfills_from_shopify(api_client, shop, db_session, checkout_payload, monkeypatch):
    async def fake_fetch_abandoned_checkouts(*, shop_domain: str, access_token: str, limit: int = 50):
        assert shop_domain == SHOP_DOMAIN
        assert access_token == "admin_access_token"
        assert limit == 5
        return [checkout_payload(token="s-1"), checkout_payload(token="s-2")]

    monkeypatch.setattr(main_module.shopify_api, "fetch_abandoned_checkouts", fake_fetch_abandoned_checkouts)

    response = api_client.post(
        "/v1/carts/sync",
        params={"shopDomain": SHOP_DOMAIN},
        json={"limit": 5},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["synced"] == 2
    assert body["outcome"] == "synced"
    assert _cart_count(db_session) == 2
    assert db_session.scalars(select(Activity)).one().event_type == "carts_synced"


def test_sync_carts_maps_shopify_failure(api_client, shop, monkeypatch):
    async def failing_fetch(*, shop_domain: str, access_token: str, limit: int = 50):
        raise ShopifyApiError(message="Shopify API call failed (401): unauthorized", upstream_status=401)

    monkeypatch.setattr(main_module.shopify_api, "fetch_abandoned_checkouts", failing_fetch)

    response = api_client.post("/v1/carts/sync", params={"shopDomain": SHOP_DOMAIN}, headers=AUTH_HEADERS)

    assert response.status_code == 502


def test_sync_carts_rejects_limit_above_maximum(api_client, shop):
    response = api_client.post(
        "/v1/carts/sync",
        params={"shopDomain": SHOP_DOMAIN},
        json={"limit": settings.CART_SYNC_MAX_LIMIT + 1},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 400


def test_setup_webhooks_registers_every_topic(api_client, shop, db_session, monkeypatch):
    registered: list[tuple[str, str]] = []

    async def fake_register_webhook(*, shop_domain: str, access_token: str, topic: str, callback_url: str):
        registered.append((topic, callback_url))
        if topic == "carts/update":
            raise ShopifyApiError(message="Webhook registration failed for carts/update: boom")
        return str(len(registered))

    monkeypatch.setattr(main_module.shopify_api, "register_webhook", fake_register_webhook)

    response = api_client.post("/v1/webhooks/setup", params={"shopDomain": SHOP_DOMAIN}, headers=AUTH_HEADERS)

    assert response.status_code == 200
    statuses = {item["topic"]: item["status"] for item in response.json()["webhooks"]}
    assert statuses["carts/update"] == "failed"
    assert statuses["checkouts/create"] == "created"
    assert ("orders/create", "https://example.ngrok.app/webhooks/orders/create") in registered
    stored = db_session.scalars(select(Activity)).one()
    assert stored.metadata_json == {"created": 5, "failed": 1}


def test_webhook_status_reports_missing_topics(api_client, shop, monkeypatch):
    async def fake_list_webhooks(*, shop_domain: str, access_token: str):
        return [{"id": 10, "topic": "checkouts/create", "address": "https://example.ngrok.app/webhooks/checkouts/create"}]

    monkeypatch.setattr(main_module.shopify_api, "list_webhooks", fake_list_webhooks)

    response = api_client.get("/v1/webhooks/status", params={"shopDomain": SHOP_DOMAIN}, headers=AUTH_HEADERS)

    statuses = {item["topic"]: item for item in response.json()["webhooks"]}
    assert statuses["checkouts/create"]["status"] == "active"
    assert statuses["checkouts/create"]["webhookId"] == "10"
    assert statuses["orders/create"]["status"] == "missing"


def test_activity_endpoints(api_client, shop, checkout_payload):
    _post_webhook(api_client, "checkouts/create", checkout_payload())
    _post_webhook(api_client, "orders/create", {"id": 1, "email": "jane@example.com"})

    listed = api_client.get("/v1/activities", params={"shopDomain": SHOP_DOMAIN}, headers=AUTH_HEADERS)
    stats = api_client.get("/v1/activities/stats", params={"shopDomain": SHOP_DOMAIN}, headers=AUTH_HEADERS)

    assert [item["eventType"] for item in listed.json()["activities"]] == ["cart_recovered"]
    assert stats.json()["counts"] == {"cart_recovered": 1}


def test_create_activity_returns_created_row(api_client, shop, db_session):
    response = api_client.post(
        "/v1/activities",
        params={"shopDomain": SHOP_DOMAIN},
        json={
            "eventType": "settings_updated",
            "title": "Settings updated",
            "description": "Recovery email delay changed to 2 hours",
            "metadata": {"delayHours": 2},
            "severity": "info",
        },
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["eventType"] == "settings_updated"
    assert body["severity"] == "info"
    assert body["metadata"] == {"delayHours": 2}
    stored = db_session.scalars(select(Activity)).one()
    assert stored.id == body["id"]
    assert stored.shop_domain == SHOP_DOMAIN


@pytest.mark.parametrize(
    "payload",
    [
        {"eventType": "unknown_type", "title": "t", "description": "d"},
        {"eventType": "carts_synced", "title": "t", "description": "d", "severity": "fatal"},
        {"eventType": "carts_synced", "title": "   ", "description": "d"},
        {"eventType": "carts_synced", "description": "d"},
    ],
)
def test_create_activity_validates_payload(api_client, shop, db_session, payload):
    response = api_client.post(
        "/v1/activities",
        params={"shopDomain": SHOP_DOMAIN},
        json=payload,
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 422
    assert db_session.scalar(select(func.count()).select_from(Activity)) == 0


def test_create_activity_requires_bearer_token(api_client, shop):
    response = api_client.post(
        "/v1/activities",
        params={"shopDomain": SHOP_DOMAIN},
        json={"eventType": "carts_synced", "title": "t", "description": "d"},
    )

    assert response.status_code == 401
