from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from cart_recovery import activity
from cart_recovery.activity import ActivityRecorder
from cart_recovery.enums import WebhookActionEnum, WebhookTopic
from cart_recovery.schemas import ShopifyCheckoutPayload, ShopifyOrderPayload
from cart_recovery.store import CartData, CartPatch, CartStore, ShopStore

logger = logging.getLogger(__name__)


class UnsupportedWebhookTopicError(ValueError):
    def __init__(self, topic: str) -> None:
        super().__init__(f"Unsupported webhook topic: {topic}")
        self.topic = topic


def parse_topic(raw_topic: str) -> WebhookTopic:
    cleaned = (raw_topic or "").strip().strip("/").lower()
    try:
        return WebhookTopic(cleaned)
    except ValueError as exc:
        raise UnsupportedWebhookTopicError(raw_topic) from exc


@dataclass(frozen=True)
class WebhookOutcome:
    topic: WebhookTopic
    action: WebhookActionEnum
    reason: str | None = None
    cart_id: int | None = None

    @property
    def applied(self) -> bool:
        return self.action != WebhookActionEnum.ignored

    def as_status(self) -> str:
        if self.reason:
            return f"{self.action.value}:{self.reason}"
        return self.action.value


class WebhookProcessor:
    """
    Maps one verified webhook delivery onto the cart store.

    Deliveries are at-least-once and unordered, so every handler is either a
    create-if-absent, a conditional update, or a no-op. Precondition failures
    come back as ``ignored`` outcomes; storage failures propagate as
    ``CartStoreUnavailableError`` so the sender redelivers.
    """

    def __init__(self, *, carts: CartStore, shops: ShopStore, recorder: ActivityRecorder) -> None:
        self._carts = carts
        self._shops = shops
        self._recorder = recorder
        self._handlers: dict[WebhookTopic, Callable[[str, dict[str, Any]], WebhookOutcome]] = {
            WebhookTopic.CHECKOUTS_CREATE: self._handle_checkout_created,
            WebhookTopic.CHECKOUTS_UPDATE: self._handle_checkout_updated,
            WebhookTopic.ORDERS_CREATE: self._handle_order_created,
            WebhookTopic.CARTS_CREATE: self._handle_cart_created,
            WebhookTopic.CARTS_UPDATE: self._handle_cart_updated,
            WebhookTopic.APP_UNINSTALLED: self._handle_app_uninstalled,
        }
        missing = set(WebhookTopic) - set(self._handlers)
        if missing:
            raise RuntimeError(f"Webhook topics without a handler: {sorted(topic.value for topic in missing)}")

    def handle(self, topic: WebhookTopic, shop_domain: str, payload: dict[str, Any]) -> WebhookOutcome:
        outcome = self._handlers[topic](shop_domain, payload)
        logger.info(
            "webhooks.handled",
            extra={
                "shop_domain": shop_domain,
                "topic": topic.value,
                "action": outcome.action.value,
                "reason": outcome.reason,
                "cart_id": outcome.cart_id,
            },
        )
        return outcome

    @staticmethod
    def _ignored(topic: WebhookTopic, reason: str, cart_id: int | None = None) -> WebhookOutcome:
        return WebhookOutcome(topic=topic, action=WebhookActionEnum.ignored, reason=reason, cart_id=cart_id)

    def _parse_snapshot(self, topic: WebhookTopic, payload: dict[str, Any]) -> ShopifyCheckoutPayload | None:
        try:
            return ShopifyCheckoutPayload.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "webhooks.invalid_payload",
                extra={"topic": topic.value, "errors": exc.errors(include_url=False)},
            )
            return None

    def _create_from_snapshot(
        self,
        topic: WebhookTopic,
        shop_domain: str,
        payload: dict[str, Any],
        *,
        require_email: bool,
    ) -> WebhookOutcome:
        snapshot = self._parse_snapshot(topic, payload)
        if snapshot is None:
            return self._ignored(topic, "invalid_payload")
        if not snapshot.line_items:
            return self._ignored(topic, "no_line_items")
        if require_email and not snapshot.contact_email:
            return self._ignored(topic, "missing_email")

        customer = snapshot.customer
        cart, created = self._carts.create_if_absent(
            shop_domain,
            snapshot.token,
            CartData(
                items=snapshot.cart_items(),
                currency=snapshot.currency,
                customer_id=snapshot.resolved_customer_id,
                customer_email=snapshot.contact_email,
                customer_first_name=customer.first_name if customer else None,
                customer_last_name=customer.last_name if customer else None,
                reported_total_price_cents=snapshot.reported_total_cents,
                source_updated_at=snapshot.updated_at,
                recovery_url=snapshot.abandoned_checkout_url,
            ),
        )
        if not created:
            return self._ignored(topic, "already_exists", cart_id=cart.id)
        return WebhookOutcome(topic=topic, action=WebhookActionEnum.created, cart_id=cart.id)

    def _update_from_snapshot(self, topic: WebhookTopic, shop_domain: str, payload: dict[str, Any]) -> WebhookOutcome:
        snapshot = self._parse_snapshot(topic, payload)
        if snapshot is None:
            return self._ignored(topic, "invalid_payload")

        # A partial payload without line_items leaves the stored items alone.
        has_items = payload.get("line_items") is not None
        result = self._carts.update_if_present(
            shop_domain,
            snapshot.token,
            CartPatch(
                items=snapshot.cart_items() if has_items else None,
                currency=snapshot.currency,
                customer_id=snapshot.resolved_customer_id,
                customer_email=snapshot.contact_email,
                reported_total_price_cents=snapshot.reported_total_cents,
                recovery_url=snapshot.abandoned_checkout_url,
            ),
            observed_at=snapshot.updated_at,
        )
        if result.status != "updated" or result.cart is None:
            return self._ignored(topic, result.status)
        return WebhookOutcome(topic=topic, action=WebhookActionEnum.updated, cart_id=result.cart.id)

    def _handle_checkout_created(self, shop_domain: str, payload: dict[str, Any]) -> WebhookOutcome:
        return self._create_from_snapshot(WebhookTopic.CHECKOUTS_CREATE, shop_domain, payload, require_email=True)

    def _handle_checkout_updated(self, shop_domain: str, payload: dict[str, Any]) -> WebhookOutcome:
        return self._update_from_snapshot(WebhookTopic.CHECKOUTS_UPDATE, shop_domain, payload)

    def _handle_cart_created(self, shop_domain: str, payload: dict[str, Any]) -> WebhookOutcome:
        return self._create_from_snapshot(WebhookTopic.CARTS_CREATE, shop_domain, payload, require_email=False)

    def _handle_cart_updated(self, shop_domain: str, payload: dict[str, Any]) -> WebhookOutcome:
        return self._update_from_snapshot(WebhookTopic.CARTS_UPDATE, shop_domain, payload)

    def _handle_order_created(self, shop_domain: str, payload: dict[str, Any]) -> WebhookOutcome:
        topic = WebhookTopic.ORDERS_CREATE
        try:
            order = ShopifyOrderPayload.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "webhooks.invalid_payload",
                extra={"topic": topic.value, "errors": exc.errors(include_url=False)},
            )
            return self._ignored(topic, "invalid_payload")

        if not order.id:
            return self._ignored(topic, "invalid_payload")
        email = order.customer_email
        if not email:
            return self._ignored(topic, "missing_email")

        result = self._carts.recover_for_customer(shop_domain, email, order_id=order.id)
        if result.status == "already_applied":
            return self._ignored(topic, "already_applied", cart_id=result.cart.id if result.cart else None)
        if result.status != "recovered" or result.cart is None:
            return self._ignored(topic, "no_abandoned_cart")

        cart = result.cart
        self._recorder.record(
            activity.cart_recovered(
                shop_domain,
                cart_id=cart.id,
                amount_cents=cart.total_price_cents,
                currency=cart.currency,
                order_id=order.id,
            )
        )
        return WebhookOutcome(topic=topic, action=WebhookActionEnum.recovered, cart_id=cart.id)

    def _handle_app_uninstalled(self, shop_domain: str, payload: dict[str, Any]) -> WebhookOutcome:
        topic = WebhookTopic.APP_UNINSTALLED
        if not self._shops.deactivate_shop(shop_domain):
            return self._ignored(topic, "unknown_shop")
        return WebhookOutcome(topic=topic, action=WebhookActionEnum.deactivated)
