import os
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("SHOPIFY_APP_API_SECRET", "test_secret")
os.environ.setdefault("SHOPIFY_APP_BASE_URL", "https://example.ngrok.app")
os.environ.setdefault("CART_RECOVERY_INTERNAL_API_TOKEN", "internal_token")
os.environ.setdefault("CART_RECOVERY_DB_URL", "sqlite:///./test_cart_recovery.db")
os.environ.setdefault("ACTIVITY_RECORDER_WORKERS", "0")

import pytest
from sqlalchemy import delete

from cart_recovery.db import SessionLocal, init_db
from cart_recovery.models import Activity, Cart, ProcessedWebhookEvent, Shop

SHOP_DOMAIN = "example.myshopify.com"


def _clear_tables(session) -> None:
    session.execute(delete(ProcessedWebhookEvent))
    session.execute(delete(Activity))
    session.execute(delete(Cart))
    session.execute(delete(Shop))
    session.commit()


@pytest.fixture()
def db_session():
    init_db()
    session = SessionLocal()
    _clear_tables(session)
    try:
        yield session
    finally:
        session.rollback()
        _clear_tables(session)
        session.close()


@pytest.fixture()
def shop(db_session) -> Shop:
    installed = Shop(
        shop_domain=SHOP_DOMAIN,
        admin_access_token="admin_access_token",
        scopes="read_checkouts,read_customers,read_orders",
        is_active=True,
    )
    db_session.add(installed)
    db_session.commit()
    db_session.refresh(installed)
    return installed


@pytest.fixture()
def checkout_payload():
    def build(
        *,
        token: str = "checkout-token-1",
        email: str | None = "Jane@Example.com",
        prices: tuple[str, ...] = ("10.00", "15.00"),
        updated_at: str | None = "2026-01-05T10:00:00Z",
        customer_id: int | None = None,
        **extra,
    ) -> dict:
        payload = {
            "token": token,
            "email": email,
            "currency": "USD",
            "total_price": str(sum(float(price) for price in prices)),
            "updated_at": updated_at,
            "line_items": [
                {
                    "product_id": 1000 + index,
                    "variant_id": 2000 + index,
                    "title": f"Product {index}",
                    "variant_title": "Default",
                    "quantity": 1,
                    "price": price,
                }
                for index, price in enumerate(prices)
            ],
        }
        if customer_id is not None:
            payload["customer_id"] = customer_id
        payload.update(extra)
        return payload

    return build
