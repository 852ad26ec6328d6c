"""
Delivery Ledger

Durable record of every webhook delivery and its attempts. The scheduler
rebuilds its due set from pending rows after a restart.
"""
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from gateway.database import AsyncSessionLocal, as_utc, session_scope, utcnow
from gateway.logging_config import get_logger
from gateway.models.webhook import DeliveryStatus, WebhookDelivery

log = get_logger(component="delivery_ledger")


def _normalize(delivery: WebhookDelivery) -> WebhookDelivery:
    delivery.next_retry_at = as_utc(delivery.next_retry_at)
    delivery.created_at = as_utc(delivery.created_at)
    delivery.updated_at = as_utc(delivery.updated_at)
    return delivery


class DeliveryLedger:
    """SQLAlchemy-backed ledger over the webhook_deliveries table."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def create(self, delivery: WebhookDelivery) -> WebhookDelivery:
        """
        Insert a new pending delivery.

        Args:
            delivery: Unsaved delivery built by the event emitter

        Returns:
            The stored delivery with its ID assigned
        """
        async with session_scope(self.session_factory) as db:
            db.add(delivery)
            await db.commit()
            await db.refresh(delivery)
            return _normalize(delivery)

    async def get(self, delivery_id: int) -> WebhookDelivery | None:
        """Get delivery by ID."""
        async with session_scope(self.session_factory) as db:
            delivery = await db.get(WebhookDelivery, delivery_id)
            return _normalize(delivery) if delivery else None

    async def record_attempt(
        self,
        delivery_id: int,
        response_status: int | None,
        response_body: str | None,
        status: DeliveryStatus,
        retry_count: int,
        next_retry_at: datetime | None
    ) -> bool:
        """
        Store the outcome of one attempt.

        The write only applies while the row is still pending and its
        retry_count is lower than the new one, so status and retry_count
        never move backwards.

        Returns:
            True if the row was updated, False if the guard rejected it
        """
        async with session_scope(self.session_factory) as db:
            stmt = (
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery_id,
                    WebhookDelivery.status == DeliveryStatus.PENDING,
                    WebhookDelivery.retry_count < retry_count,
                )
                .values(
                    response_status=response_status,
                    response_body=response_body,
                    status=status,
                    retry_count=retry_count,
                    next_retry_at=next_retry_at,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            await db.commit()

        if result.rowcount == 0:
            log.warning(
                "ledger_attempt_rejected",
                delivery_id=delivery_id,
                status=status.value,
                retry_count=retry_count,
            )
            return False
        return True

    async def list_by_instance(self, instance_id: int, limit: int = 50) -> list[WebhookDelivery]:
        """Get deliveries for an instance (most recent first)."""
        async with session_scope(self.session_factory) as db:
            stmt = (
                select(WebhookDelivery)
                .where(WebhookDelivery.instance_id == instance_id)
                .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [_normalize(d) for d in result.scalars().all()]

    async def list_pending(self) -> list[WebhookDelivery]:
        """Get every pending delivery, earliest next_retry_at first."""
        async with session_scope(self.session_factory) as db:
            stmt = (
                select(WebhookDelivery)
                .where(WebhookDelivery.status == DeliveryStatus.PENDING)
                .order_by(WebhookDelivery.next_retry_at, WebhookDelivery.id)
            )
            result = await db.execute(stmt)
            return [_normalize(d) for d in result.scalars().all()]
