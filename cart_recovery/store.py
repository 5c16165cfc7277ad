from __future__ import annotations

import logging
import threading
from collections.abc import Hashable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cart_recovery.enums import CartStatusEnum
from cart_recovery.models import Cart, ProcessedWebhookEvent, Shop, utcnow
from cart_recovery.schemas import CartLineItem

logger = logging.getLogger(__name__)

_MAX_RECOVERY_ATTEMPTS = 3


class CartStoreUnavailableError(RuntimeError):
    """Storage failed in a way a retry may fix (connection loss, lock timeout, ...)."""


def to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def summarize_items(items: Sequence[CartLineItem]) -> tuple[int, int]:
    total_items = sum(item.quantity for item in items)
    total_price_cents = sum(item.priceCents * item.quantity for item in items)
    return total_items, total_price_cents


@dataclass
class CartData:
    items: list[CartLineItem]
    currency: str | None = None
    customer_id: str | None = None
    customer_email: str | None = None
    customer_first_name: str | None = None
    customer_last_name: str | None = None
    reported_total_price_cents: int | None = None
    abandoned_at: datetime | None = None
    source_updated_at: datetime | None = None
    recovery_url: str | None = None


@dataclass
class CartPatch:
    items: list[CartLineItem] | None = None
    currency: str | None = None
    customer_id: str | None = None
    customer_email: str | None = None
    reported_total_price_cents: int | None = None
    recovery_url: str | None = None
    abandoned_at: datetime | None = None


@dataclass
class CartUpdateResult:
    status: Literal["updated", "not_found", "stale", "not_abandoned"]
    cart: Cart | None = None


@dataclass
class CartRecoveryResult:
    status: Literal["recovered", "already_applied", "no_match"]
    cart: Cart | None = None


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class KeyedLock:
    """Serializes callers that share a key; callers with different keys never wait on each other."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _LockEntry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, _LockEntry())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class Repository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("cart_store.storage_error", extra={"error": str(exc)})
            raise CartStoreUnavailableError(str(exc)) from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()


class CartStore(Repository):
    """Single writer of cart lifecycle state, keyed by (shop_domain, cart_token)."""

    def __init__(self, session_factory: sessionmaker, *, locks: KeyedLock | None = None) -> None:
        super().__init__(session_factory)
        self._locks = locks or KeyedLock()

    @staticmethod
    def _key_filter(shop_domain: str, cart_token: str) -> tuple[Any, Any]:
        return Cart.shop_domain == shop_domain, Cart.cart_token == cart_token

    def get_by_token(self, shop_domain: str, cart_token: str) -> Cart | None:
        with self._session() as session:
            stmt = select(Cart).where(*self._key_filter(shop_domain, cart_token))
            return session.scalars(stmt).first()

    def get_cart(self, shop_domain: str, cart_id: int) -> Cart | None:
        with self._session() as session:
            stmt = select(Cart).where(Cart.id == cart_id, Cart.shop_domain == shop_domain)
            return session.scalars(stmt).first()

    def create_if_absent(self, shop_domain: str, cart_token: str, data: CartData) -> tuple[Cart, bool]:
        """
        Create the cart for (shop_domain, cart_token) unless one already exists.

        Returns (cart, created_flag). An existing cart is returned untouched.
        """
        with self._locks.hold(("cart", shop_domain, cart_token)):
            existing = self.get_by_token(shop_domain, cart_token)
            if existing:
                return existing, False

            now = utcnow()
            total_items, total_price_cents = summarize_items(data.items)
            cart = Cart(
                shop_domain=shop_domain,
                cart_token=cart_token,
                customer_id=data.customer_id,
                customer_email=data.customer_email,
                customer_first_name=data.customer_first_name,
                customer_last_name=data.customer_last_name,
                items=[item.model_dump() for item in data.items],
                total_items=total_items,
                total_price_cents=total_price_cents,
                reported_total_price_cents=data.reported_total_price_cents,
                currency=data.currency or "USD",
                status=CartStatusEnum.abandoned.value,
                abandoned_at=to_utc(data.abandoned_at) or now,
                source_updated_at=to_utc(data.source_updated_at),
                recovery_url=data.recovery_url,
                created_at=now,
                updated_at=now,
            )
            try:
                with self._session() as session:
                    session.add(cart)
                    session.flush()
            except IntegrityError:
                # Another process inserted the same key first.
                existing = self.get_by_token(shop_domain, cart_token)
                if existing:
                    return existing, False
                raise CartStoreUnavailableError(
                    f"Cart insert for {shop_domain}/{cart_token} conflicted but no row was found"
                )
            logger.info(
                "cart_store.cart_created",
                extra={"shop_domain": shop_domain, "cart_token": cart_token, "cart_id": cart.id},
            )
            return cart, True

    def update_if_present(
        self,
        shop_domain: str,
        cart_token: str,
        patch: CartPatch,
        *,
        observed_at: datetime | None = None,
    ) -> CartUpdateResult:
        """
        Replace a cart's items and derived totals in one conditional UPDATE.

        Never creates and only touches carts that are still abandoned. When
        observed_at is given, a snapshot older than the last applied one is
        rejected as stale. A patch without items keeps the stored items and totals.
        """
        observed_at = to_utc(observed_at)
        now = utcnow()
        values: dict[str, Any] = {
            "abandoned_at": to_utc(patch.abandoned_at) or now,
            "updated_at": now,
        }
        if patch.items is not None:
            total_items, total_price_cents = summarize_items(patch.items)
            values["items"] = [item.model_dump() for item in patch.items]
            values["total_items"] = total_items
            values["total_price_cents"] = total_price_cents
        if patch.currency:
            values["currency"] = patch.currency
        if patch.reported_total_price_cents is not None:
            values["reported_total_price_cents"] = patch.reported_total_price_cents
        if patch.customer_id:
            values["customer_id"] = patch.customer_id
        if patch.customer_email:
            values["customer_email"] = patch.customer_email
        if patch.recovery_url:
            values["recovery_url"] = patch.recovery_url

        conditions = [*self._key_filter(shop_domain, cart_token), Cart.status == CartStatusEnum.abandoned.value]
        if observed_at is not None:
            values["source_updated_at"] = observed_at
            conditions.append(
                or_(Cart.source_updated_at.is_(None), Cart.source_updated_at <= observed_at)
            )

        with self._locks.hold(("cart", shop_domain, cart_token)):
            with self._session() as session:
                result = session.execute(
                    update(Cart).where(*conditions).values(**values).execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    current_status = session.scalar(
                        select(Cart.status).where(*self._key_filter(shop_domain, cart_token))
                    )
                    if current_status is None:
                        return CartUpdateResult(status="not_found")
                    if current_status != CartStatusEnum.abandoned.value:
                        return CartUpdateResult(status="not_abandoned")
                    return CartUpdateResult(status="stale")
                cart = session.scalars(
                    select(Cart).where(*self._key_filter(shop_domain, cart_token))
                ).one()
                return CartUpdateResult(status="updated", cart=cart)

    def find_for_recovery(self, shop_domain: str, customer_email: str) -> Cart | None:
        email = (customer_email or "").strip().lower()
        if not email:
            return None
        with self._session() as session:
            stmt = (
                select(Cart)
                .where(
                    Cart.shop_domain == shop_domain,
                    Cart.customer_email == email,
                    Cart.status == CartStatusEnum.abandoned.value,
                )
                .order_by(Cart.abandoned_at.desc(), Cart.id.desc())
                .limit(1)
            )
            return session.scalars(stmt).first()

    def find_by_recovered_order(self, shop_domain: str, order_id: str) -> Cart | None:
        with self._session() as session:
            stmt = select(Cart).where(Cart.shop_domain == shop_domain, Cart.recovered_order_id == order_id)
            return session.scalars(stmt).first()

    def mark_recovered(
        self,
        cart_id: int,
        *,
        order_id: str | None = None,
        recovered_at: datetime | None = None,
    ) -> Cart | None:
        now = utcnow()
        with self._session() as session:
            result = session.execute(
                update(Cart)
                .where(Cart.id == cart_id, Cart.status == CartStatusEnum.abandoned.value)
                .values(
                    status=CartStatusEnum.recovered.value,
                    recovered_at=func.coalesce(Cart.recovered_at, to_utc(recovered_at) or now),
                    recovered_order_id=order_id,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            return session.get(Cart, cart_id)

    def recover_for_customer(
        self,
        shop_domain: str,
        customer_email: str,
        *,
        order_id: str,
    ) -> CartRecoveryResult:
        """
        Move the customer's most recently abandoned cart to recovered.

        The order id is stored on the cart, so a redelivered order finds its
        earlier result instead of recovering a second cart.
        """
        if not order_id:
            raise ValueError("order_id is required to recover a cart")
        email = (customer_email or "").strip().lower()
        with self._locks.hold(("recovery", shop_domain, email)):
            applied = self.find_by_recovered_order(shop_domain, order_id)
            if applied:
                return CartRecoveryResult(status="already_applied", cart=applied)

            for _ in range(_MAX_RECOVERY_ATTEMPTS):
                candidate = self.find_for_recovery(shop_domain, email)
                if candidate is None:
                    return CartRecoveryResult(status="no_match")
                recovered = self.mark_recovered(candidate.id, order_id=order_id)
                if recovered is not None:
                    logger.info(
                        "cart_store.cart_recovered",
                        extra={"shop_domain": shop_domain, "cart_id": recovered.id, "order_id": order_id},
                    )
                    return CartRecoveryResult(status="recovered", cart=recovered)
                # The candidate changed state under us; pick again.
            return CartRecoveryResult(status="no_match")

    def list_carts(
        self,
        shop_domain: str,
        *,
        status: CartStatusEnum | None = CartStatusEnum.abandoned,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Cart], int]:
        conditions = [Cart.shop_domain == shop_domain]
        if status is not None:
            conditions.append(Cart.status == status.value)
        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(Cart).where(*conditions)) or 0
            stmt = (
                select(Cart)
                .where(*conditions)
                .order_by(Cart.abandoned_at.desc(), Cart.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(session.scalars(stmt).all()), int(total)

    def update_status(self, shop_domain: str, cart_id: int, status: CartStatusEnum) -> Cart | None:
        now = utcnow()
        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if status == CartStatusEnum.recovered:
            values["recovered_at"] = func.coalesce(Cart.recovered_at, now)
        with self._session() as session:
            result = session.execute(
                update(Cart)
                .where(Cart.id == cart_id, Cart.shop_domain == shop_domain)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            return session.get(Cart, cart_id)

    def delete_cart(self, shop_domain: str, cart_id: int) -> bool:
        with self._session() as session:
            result = session.execute(
                delete(Cart).where(Cart.id == cart_id, Cart.shop_domain == shop_domain)
            )
            return result.rowcount > 0

    def recovery_stats(self, shop_domain: str, *, days: int = 30) -> dict[str, Any]:
        since = utcnow() - timedelta(days=days)
        with self._session() as session:
            rows = session.execute(
                select(Cart.status, func.count(Cart.id), func.coalesce(func.sum(Cart.total_price_cents), 0))
                .where(Cart.shop_domain == shop_domain, Cart.abandoned_at >= since)
                .group_by(Cart.status)
            ).all()

        counts = {status.value: 0 for status in CartStatusEnum}
        values = {status.value: 0 for status in CartStatusEnum}
        for status_value, count, total_value in rows:
            counts[status_value] = int(count)
            values[status_value] = int(total_value)

        tracked = sum(counts.values())
        recovered = counts[CartStatusEnum.recovered.value]
        return {
            "totalAbandoned": counts[CartStatusEnum.abandoned.value],
            "totalRecovered": recovered,
            "totalExpired": counts[CartStatusEnum.expired.value],
            "recoveryRate": round(recovered / tracked * 100, 2) if tracked else 0.0,
            "totalValueCents": sum(values.values()),
            "recoveredValueCents": values[CartStatusEnum.recovered.value],
        }


class ShopStore(Repository):
    def get_active_shop(self, shop_domain: str) -> Shop | None:
        with self._session() as session:
            stmt = select(Shop).where(Shop.shop_domain == shop_domain, Shop.is_active.is_(True))
            return session.scalars(stmt).first()

    def deactivate_shop(self, shop_domain: str) -> bool:
        """Mark the shop uninstalled. Its carts are kept as history."""
        now = utcnow()
        with self._session() as session:
            result = session.execute(
                update(Shop)
                .where(Shop.shop_domain == shop_domain)
                .values(
                    is_active=False,
                    admin_access_token="",
                    uninstalled_at=now,
                    last_active_at=now,
                    updated_at=now,
                )
            )
            return result.rowcount > 0


class ProcessedEventStore(Repository):
    """Remembers webhook deliveries by the sender's event id so exact redeliveries short-circuit."""

    def is_processed(self, shop_domain: str, topic: str, event_id: str) -> bool:
        with self._session() as session:
            stmt = select(ProcessedWebhookEvent.id).where(
                ProcessedWebhookEvent.shop_domain == shop_domain,
                ProcessedWebhookEvent.topic == topic,
                ProcessedWebhookEvent.event_id == event_id,
            )
            return session.scalar(stmt) is not None

    def mark_processed(self, shop_domain: str, topic: str, event_id: str, status: str) -> None:
        try:
            with self._session() as session:
                session.add(
                    ProcessedWebhookEvent(
                        shop_domain=shop_domain,
                        topic=topic,
                        event_id=event_id,
                        status=status,
                    )
                )
        except IntegrityError:
            # A concurrent redelivery already recorded it.
            pass
