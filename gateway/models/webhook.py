"""
Webhook Delivery Model

Tracks outbound webhook deliveries. Rows are created by the event emitter
and mutated only by the delivery scheduler; they are never deleted here.
"""
import enum
from datetime import datetime
from sqlalchemy import Integer, String, Text, DateTime, ForeignKey, JSON, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from gateway.models.base import Base, TimestampMixin


class EventType(str, enum.Enum):
    """Webhook event names an instance can subscribe to."""
    MESSAGE = "message"
    MESSAGE_STATUS = "message_status"
    CONNECTION = "connection"
    QR_UPDATED = "qr_updated"


class DeliveryStatus(str, enum.Enum):
    """Delivery status. Only moves pending -> delivered | failed."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class WebhookDelivery(Base, TimestampMixin):
    """Webhook delivery tracking."""
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_status_next_retry", "status", "next_retry_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("whatsapp_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    # Snapshot of the instance URL when the event fired
    webhook_url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, native_enum=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=DeliveryStatus.PENDING
    )
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<WebhookDelivery(id={self.id}, instance_id={self.instance_id}, status={self.status}, retry_count={self.retry_count})>"
