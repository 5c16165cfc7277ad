from __future__ import annotations

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cart_recovery.enums import ActivitySeverityEnum, ActivityTypeEnum, CartStatusEnum


def decimal_to_cents(amount: Decimal) -> int:
    return int((amount * Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _coerce_identifier(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return value


def _normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().lower()
    return cleaned or None


# Inbound platform payloads. Webhook bodies and reconciliation snapshots share
# these shapes; unknown fields are ignored.


class ShopifyCustomerPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        return _coerce_identifier(value)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str | None) -> str | None:
        return _normalize_email(value)


class ShopifyLineItemPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_id: str | None = None
    variant_id: str | None = None
    title: str | None = None
    variant_title: str | None = None
    quantity: int = Field(ge=1)
    price: Decimal = Field(default=Decimal("0"), ge=0)
    image_url: str | None = None
    product_url: str | None = None

    @field_validator("product_id", "variant_id", mode="before")
    @classmethod
    def coerce_ids(cls, value: Any) -> Any:
        return _coerce_identifier(value)

    @property
    def price_cents(self) -> int:
        return decimal_to_cents(self.price)

    def to_cart_item(self) -> "CartLineItem":
        return CartLineItem(
            productId=self.product_id,
            variantId=self.variant_id,
            title=self.title,
            variantTitle=self.variant_title,
            quantity=self.quantity,
            priceCents=self.price_cents,
            image=self.image_url,
            productUrl=self.product_url,
        )


class ShopifyCheckoutPayload(BaseModel):
    """Checkout or cart snapshot, as pushed by webhooks or pulled from the Admin API."""

    model_config = ConfigDict(extra="ignore")

    token: str = Field(min_length=1)
    email: str | None = None
    customer_id: str | None = None
    customer: ShopifyCustomerPayload | None = None
    line_items: list[ShopifyLineItemPayload] = Field(default_factory=list)
    total_price: Decimal | None = Field(default=None, ge=0)
    currency: str | None = None
    abandoned_checkout_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("customer_id", mode="before")
    @classmethod
    def coerce_customer_id(cls, value: Any) -> Any:
        return _coerce_identifier(value)

    @field_validator("line_items", mode="before")
    @classmethod
    def default_line_items(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str | None) -> str | None:
        return _normalize_email(value)

    @property
    def contact_email(self) -> str | None:
        if self.email:
            return self.email
        if self.customer and self.customer.email:
            return self.customer.email
        return None

    @property
    def resolved_customer_id(self) -> str | None:
        if self.customer_id:
            return self.customer_id
        if self.customer and self.customer.id:
            return self.customer.id
        return None

    @property
    def reported_total_cents(self) -> int | None:
        if self.total_price is None:
            return None
        return decimal_to_cents(self.total_price)

    def cart_items(self) -> list["CartLineItem"]:
        return [item.to_cart_item() for item in self.line_items]


class ShopifyOrderPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    email: str | None = None
    contact_email: str | None = None
    customer: ShopifyCustomerPayload | None = None
    cart_token: str | None = None
    checkout_token: str | None = None
    created_at: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        return _coerce_identifier(value)

    @field_validator("email", "contact_email")
    @classmethod
    def normalize_email(cls, value: str | None) -> str | None:
        return _normalize_email(value)

    @property
    def customer_email(self) -> str | None:
        for candidate in (self.email, self.contact_email):
            if candidate:
                return candidate
        if self.customer and self.customer.email:
            return self.customer.email
        return None


# Internal API models.


class CartLineItem(BaseModel):
    productId: str | None = None
    variantId: str | None = None
    title: str | None = None
    variantTitle: str | None = None
    quantity: int = Field(ge=1)
    priceCents: int = Field(ge=0)
    image: str | None = None
    productUrl: str | None = None


class CartResponse(BaseModel):
    id: int
    shopDomain: str
    cartToken: str
    customerId: str | None = None
    customerEmail: str | None = None
    customerFirstName: str | None = None
    customerLastName: str | None = None
    items: list[CartLineItem]
    totalItems: int
    totalPriceCents: int
    reportedTotalPriceCents: int | None = None
    currency: str
    status: CartStatusEnum
    abandonedAt: datetime
    recoveredAt: datetime | None = None
    recoveredOrderId: str | None = None
    recoveryAttempts: int
    lastRecoveryAttemptAt: datetime | None = None
    recoveryUrl: str | None = None
    notes: str | None = None
    createdAt: datetime
    updatedAt: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int
    hasNext: bool
    hasPrev: bool


class CartListResponse(BaseModel):
    shopDomain: str
    carts: list[CartResponse]
    pagination: Pagination


class UpdateCartStatusRequest(BaseModel):
    status: CartStatusEnum


class SyncCartsRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1)


class ReconcileSummary(BaseModel):
    shopDomain: str
    synced: int = 0
    skipped: int = 0
    errors: int = 0
    total: int = 0
    outcome: Literal["nothing_found", "up_to_date", "synced", "failed"] = "nothing_found"
    summary: str = ""


class RecoveryStatsResponse(BaseModel):
    shopDomain: str
    periodDays: int
    totalAbandoned: int
    totalRecovered: int
    totalExpired: int
    recoveryRate: float
    totalValueCents: int
    recoveredValueCents: int


class ActivityResponse(BaseModel):
    id: int
    shopDomain: str
    eventType: ActivityTypeEnum
    title: str
    description: str
    metadata: dict[str, Any]
    severity: ActivitySeverityEnum
    createdAt: datetime


class CreateActivityRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    eventType: ActivityTypeEnum
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    severity: ActivitySeverityEnum = ActivitySeverityEnum.success

    @field_validator("title", "description")
    @classmethod
    def strip_text(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned


class ActivityListResponse(BaseModel):
    shopDomain: str
    activities: list[ActivityResponse]


class ActivityStatsResponse(BaseModel):
    shopDomain: str
    periodDays: int
    counts: dict[str, int]


class WebhookSubscriptionStatus(BaseModel):
    topic: str
    status: Literal["active", "missing", "created", "failed"]
    webhookId: str | None = None
    error: str | None = None


class WebhookSetupResponse(BaseModel):
    shopDomain: str
    webhooks: list[WebhookSubscriptionStatus]
