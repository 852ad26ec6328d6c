"""
Event Emitter

Turns instance occurrences (state changes, inbound messages, message
status updates, QR refreshes) into webhook deliveries. It is the only
writer of new delivery rows.
"""
import copy
from datetime import datetime
from typing import Callable

from gateway.database import utcnow
from gateway.exceptions import InvalidEventType
from gateway.logging_config import get_logger
from gateway.models.instance import Instance
from gateway.models.webhook import DeliveryStatus, EventType, WebhookDelivery
from gateway.repositories.delivery_ledger import DeliveryLedger
from gateway.repositories.instance_repository import InstanceRepository
from gateway.routes.metrics import track_delivery_created

log = get_logger(component="event_emitter")


def parse_event_type(event_type: str | EventType) -> EventType:
    """Validate an event name. Raises InvalidEventType."""
    try:
        return EventType(event_type)
    except ValueError:
        allowed = ", ".join(e.value for e in EventType)
        raise InvalidEventType(f"Unknown event type '{event_type}'. Use one of: {allowed}") from None


def build_payload(instance_id: int, event_type: EventType, data: dict, occurred_at: datetime) -> dict:
    """Webhook wire body."""
    return {
        "event": event_type.value,
        "instance_id": instance_id,
        "timestamp": occurred_at.isoformat(),
        "data": copy.deepcopy(data),
    }


def build_delivery(
    instance: Instance,
    event_type: str | EventType,
    data: dict,
    now: datetime
) -> WebhookDelivery | None:
    """
    Build the delivery for an event, or None if the instance is not subscribed.

    The instance's current webhook_url is copied into the row, so later
    config edits never touch deliveries already created.
    """
    event_type = parse_event_type(event_type)
    if not instance.is_subscribed(event_type.value):
        return None

    return WebhookDelivery(
        instance_id=instance.id,
        event_type=event_type.value,
        payload=build_payload(instance.id, event_type, data or {}, now),
        webhook_url=instance.webhook_url,
        status=DeliveryStatus.PENDING,
        retry_count=0,
        next_retry_at=now,
        created_at=now,
        updated_at=now,
    )


class EventEmitter:
    """Creates delivery rows and hands them to the scheduler."""

    def __init__(
        self,
        ledger: DeliveryLedger,
        instances: InstanceRepository,
        scheduler=None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.ledger = ledger
        self.instances = instances
        self.scheduler = scheduler
        self.clock = clock

    async def emit(self, instance: Instance, event_type: str | EventType, data: dict) -> WebhookDelivery | None:
        """
        Create and enqueue the delivery for one event.

        Args:
            instance: Instance as currently stored (its webhook config is snapshotted)
            event_type: One of message, message_status, connection, qr_updated
            data: Event-specific JSON data

        Returns:
            The stored pending delivery, or None if the event is not subscribed
        """
        delivery = build_delivery(instance, event_type, data, self.clock())
        if delivery is None:
            log.debug(
                "webhook_event_skipped",
                instance_id=instance.id,
                event_type=str(getattr(event_type, "value", event_type)),
            )
            return None

        delivery = await self.ledger.create(delivery)
        track_delivery_created(delivery.event_type)
        log.info(
            "webhook_delivery_created",
            delivery_id=delivery.id,
            instance_id=instance.id,
            event_type=delivery.event_type,
        )

        if self.scheduler is not None:
            self.scheduler.enqueue(delivery)
        return delivery

    async def record_event(self, instance_id: int, event_type: str | EventType, data: dict) -> WebhookDelivery | None:
        """Load the instance fresh and emit an event for it."""
        event_type = parse_event_type(event_type)
        instance = await self.instances.load_instance(instance_id)
        return await self.emit(instance, event_type, data)
