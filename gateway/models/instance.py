"""
Messaging instance model.

SECURITY: Queries on behalf of a caller MUST check user_id ownership.
The status column is written only through the InstanceStateMachine.
"""
import enum
import secrets
from datetime import datetime
from sqlalchemy import Integer, String, Text, DateTime, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship
from gateway.models.base import Base, TimestampMixin


class InstanceStatus(str, enum.Enum):
    """Instance lifecycle status."""
    CREATING = "creating"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


class InstanceAction(str, enum.Enum):
    """Lifecycle actions a caller may request."""
    START = "start"
    STOP = "stop"
    RESTART = "restart"


def generate_api_key() -> str:
    """Generate the opaque per-instance API key (64 hex chars)."""
    return secrets.token_hex(32)


class Instance(Base, TimestampMixin):
    """
    A user-owned messaging gateway instance.
    
    Holds the lifecycle status, the connected phone number and the
    webhook subscription used by the event emitter.
    """
    __tablename__ = "whatsapp_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    instance_name: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[InstanceStatus] = mapped_column(
        SQLEnum(InstanceStatus, native_enum=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=InstanceStatus.CREATING
    )
    qr_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_events: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    api_key: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        default=generate_api_key
    )
    container_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="instances")

    def is_subscribed(self, event_type: str) -> bool:
        """True if a webhook URL is set and event_type is in webhook_events."""
        if not self.webhook_url or not self.webhook_events:
            return False
        return event_type in self.webhook_events

    def can_send_messages(self) -> bool:
        """Messages require a running instance with a connected phone number."""
        return self.status == InstanceStatus.RUNNING and bool(self.phone_number)

    def __repr__(self):
        return f"<Instance(id={self.id}, user_id={self.user_id}, status={self.status})>"
