from __future__ import annotations

import logging
from typing import Any, Protocol

from cart_recovery import activity
from cart_recovery.activity import ActivityRecorder
from cart_recovery.models import Shop
from cart_recovery.schemas import ReconcileSummary, ShopifyCheckoutPayload, ShopifyCustomerPayload
from cart_recovery.store import CartData, CartStore

logger = logging.getLogger(__name__)


class CheckoutSource(Protocol):
    async def fetch_abandoned_checkouts(
        self, *, shop_domain: str, access_token: str, limit: int = 50
    ) -> list[dict[str, Any]]: ...

    async def get_customer(self, *, shop_domain: str, access_token: str, customer_id: str) -> dict[str, Any]: ...


def summarize(shop_domain: str, *, synced: int, skipped: int, errors: int, total: int) -> ReconcileSummary:
    if total == 0:
        outcome, summary = "nothing_found", "No abandoned carts found in Shopify"
    elif synced > 0:
        outcome, summary = "synced", f"Successfully synced {synced} new carts"
    elif errors > 0:
        outcome, summary = "failed", f"No new carts synced ({errors} of {total} failed)"
    else:
        outcome, summary = "up_to_date", "All abandoned carts are already synced"
    return ReconcileSummary(
        shopDomain=shop_domain,
        synced=synced,
        skipped=skipped,
        errors=errors,
        total=total,
        outcome=outcome,
        summary=summary,
    )


class CartReconciler:
    """
    Pulls abandoned checkouts from the platform and backfills missing carts.

    Additive only: a cart that already exists locally is skipped, since the
    pulled snapshot cannot be ordered against webhook-driven writes.
    """

    def __init__(
        self,
        *,
        carts: CartStore,
        source: CheckoutSource,
        recorder: ActivityRecorder,
        max_limit: int = 250,
    ) -> None:
        self._carts = carts
        self._source = source
        self._recorder = recorder
        self._max_limit = max_limit

    async def reconcile(self, shop: Shop, *, limit: int = 50) -> ReconcileSummary:
        limit = max(1, min(limit, self._max_limit))
        shop_domain = shop.shop_domain
        logger.info("reconcile.started", extra={"shop_domain": shop_domain, "limit": limit})

        # A failure to fetch the batch itself aborts the pass.
        checkouts = await self._source.fetch_abandoned_checkouts(
            shop_domain=shop_domain,
            access_token=shop.admin_access_token,
            limit=limit,
        )
        checkouts = checkouts[:limit]

        synced = skipped = errors = 0
        for raw in checkouts:
            try:
                created = await self._sync_one(shop, raw)
            except Exception:
                errors += 1
                logger.exception(
                    "reconcile.checkout_failed",
                    extra={"shop_domain": shop_domain, "token": _raw_token(raw)},
                )
                continue
            if created:
                synced += 1
            else:
                skipped += 1

        result = summarize(shop_domain, synced=synced, skipped=skipped, errors=errors, total=len(checkouts))
        logger.info("reconcile.completed", extra={"shop_domain": shop_domain, **result.model_dump()})

        if synced > 0:
            self._recorder.record(
                activity.carts_synced(shop_domain, synced=synced, total=len(checkouts), errors=errors)
            )
        return result

    async def _sync_one(self, shop: Shop, raw: Any) -> bool:
        snapshot = ShopifyCheckoutPayload.model_validate(raw)
        if self._carts.get_by_token(shop.shop_domain, snapshot.token) is not None:
            return False

        customer = await self._enrich_customer(shop, snapshot)
        cart_data = CartData(
            items=snapshot.cart_items(),
            currency=snapshot.currency,
            customer_id=snapshot.resolved_customer_id,
            customer_email=snapshot.contact_email,
            reported_total_price_cents=snapshot.reported_total_cents,
            abandoned_at=snapshot.updated_at or snapshot.created_at,
            source_updated_at=snapshot.updated_at,
            recovery_url=snapshot.abandoned_checkout_url,
        )
        if customer is not None:
            cart_data.customer_id = customer.id or cart_data.customer_id
            cart_data.customer_email = customer.email or cart_data.customer_email
            cart_data.customer_first_name = customer.first_name
            cart_data.customer_last_name = customer.last_name

        # A webhook may have created the cart since the lookup above.
        _, created = self._carts.create_if_absent(shop.shop_domain, snapshot.token, cart_data)
        return created

    async def _enrich_customer(self, shop: Shop, snapshot: ShopifyCheckoutPayload) -> ShopifyCustomerPayload | None:
        customer_id = snapshot.resolved_customer_id
        if not customer_id:
            return snapshot.customer
        try:
            raw_customer = await self._source.get_customer(
                shop_domain=shop.shop_domain,
                access_token=shop.admin_access_token,
                customer_id=customer_id,
            )
            return ShopifyCustomerPayload.model_validate(raw_customer)
        except Exception as exc:
            logger.warning(
                "reconcile.customer_enrichment_failed",
                extra={"shop_domain": shop.shop_domain, "customer_id": customer_id, "error": str(exc)},
            )
            return snapshot.customer


def _raw_token(raw: Any) -> Any:
    if isinstance(raw, dict):
        return raw.get("token")
    return None
