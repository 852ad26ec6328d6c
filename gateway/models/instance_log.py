"""
Instance log model.

Per-instance activity log shown to the owner (lifecycle transitions,
sends, connector reports).
"""
import enum
from sqlalchemy import Integer, Text, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from gateway.models.base import Base, TimestampMixin


class LogLevel(str, enum.Enum):
    """Instance log level."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    DEBUG = "debug"


class InstanceLog(Base, TimestampMixin):
    """A single instance log entry."""
    __tablename__ = "instance_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("whatsapp_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    level: Mapped[LogLevel] = mapped_column(
        SQLEnum(LogLevel, native_enum=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    log_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    def __repr__(self):
        return f"<InstanceLog(id={self.id}, instance_id={self.instance_id}, level={self.level})>"
