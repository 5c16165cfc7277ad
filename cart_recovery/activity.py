from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from cart_recovery.enums import ActivitySeverityEnum, ActivityTypeEnum
from cart_recovery.models import Activity, utcnow
from cart_recovery.store import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivityEvent:
    shop_domain: str
    event_type: ActivityTypeEnum
    title: str
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)
    severity: ActivitySeverityEnum = ActivitySeverityEnum.success


def carts_synced(shop_domain: str, *, synced: int, total: int, errors: int) -> ActivityEvent:
    if total == 0:
        description = "No abandoned carts found in Shopify store"
    elif synced == 0:
        description = "All abandoned carts are already synced"
    else:
        description = f"Successfully synced {synced} new carts from {total} total abandoned carts"
        if errors:
            description += f" ({errors} errors)"
    return ActivityEvent(
        shop_domain=shop_domain,
        event_type=ActivityTypeEnum.carts_synced,
        title=f"Synced {synced} abandoned carts",
        description=description,
        metadata={"synced": synced, "total": total, "errors": errors},
        severity=ActivitySeverityEnum.warning if errors else ActivitySeverityEnum.success,
    )


def cart_recovered(
    shop_domain: str,
    *,
    cart_id: int,
    amount_cents: int,
    currency: str,
    order_id: str | None,
) -> ActivityEvent:
    amount = f"{amount_cents / 100:.2f} {currency}"
    return ActivityEvent(
        shop_domain=shop_domain,
        event_type=ActivityTypeEnum.cart_recovered,
        title="Cart recovered",
        description=f"Recovered abandoned cart worth {amount}",
        metadata={"cartId": cart_id, "amountCents": amount_cents, "currency": currency, "orderId": order_id},
    )


def webhooks_setup(shop_domain: str, *, created: int, failed: int) -> ActivityEvent:
    return ActivityEvent(
        shop_domain=shop_domain,
        event_type=ActivityTypeEnum.webhooks_setup,
        title="Webhooks configured",
        description=f"Configured {created} webhooks for real-time cart tracking",
        metadata={"created": created, "failed": failed},
        severity=ActivitySeverityEnum.warning if failed else ActivitySeverityEnum.success,
    )


class ActivityRecorder(Repository):
    """
    Best-effort audit sink.

    ``record`` never raises. With an executor the write happens off the
    caller's thread and nobody waits for it.
    """

    def __init__(self, session_factory: sessionmaker, *, executor: Executor | None = None) -> None:
        super().__init__(session_factory)
        self._executor = executor

    def record(self, event: ActivityEvent) -> None:
        if self._executor is None:
            self._write_quietly(event)
            return
        try:
            self._executor.submit(self._write_quietly, event)
        except RuntimeError as exc:
            logger.warning(
                "activity.submit_failed",
                extra={"shop_domain": event.shop_domain, "event_type": event.event_type.value, "error": str(exc)},
            )

    def _write_quietly(self, event: ActivityEvent) -> None:
        try:
            self._write(event)
        except Exception:
            logger.exception(
                "activity.record_failed",
                extra={"shop_domain": event.shop_domain, "event_type": event.event_type.value},
            )

    def create(self, event: ActivityEvent) -> Activity:
        """Write the event now and return the stored row. Storage errors propagate."""
        return self._write(event)

    def _write(self, event: ActivityEvent) -> Activity:
        row = Activity(
            shop_domain=event.shop_domain,
            event_type=event.event_type.value,
            title=event.title,
            description=event.description,
            metadata_json=dict(event.metadata),
            severity=event.severity.value,
        )
        with self._session() as session:
            session.add(row)
            session.flush()
        logger.info(
            "activity.recorded",
            extra={"shop_domain": event.shop_domain, "event_type": event.event_type.value, "activity_id": row.id},
        )
        return row

    def list_recent(self, shop_domain: str, *, limit: int = 10) -> list[Activity]:
        with self._session() as session:
            stmt = (
                select(Activity)
                .where(Activity.shop_domain == shop_domain)
                .order_by(Activity.created_at.desc(), Activity.id.desc())
                .limit(limit)
            )
            return list(session.scalars(stmt).all())

    def stats(self, shop_domain: str, *, days: int = 30) -> dict[str, int]:
        since = utcnow() - timedelta(days=days)
        with self._session() as session:
            rows = session.execute(
                select(Activity.event_type, func.count(Activity.id))
                .where(Activity.shop_domain == shop_domain, Activity.created_at >= since)
                .group_by(Activity.event_type)
            ).all()
        return {event_type: int(count) for event_type, count in rows}

    def start(self, executor: Executor) -> None:
        self._executor = executor

    def shutdown(self, *, wait: bool = True) -> None:
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
