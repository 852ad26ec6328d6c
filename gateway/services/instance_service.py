"""
Instance service.

Facade used by the HTTP layer. Owner-facing methods take the resolved
caller ID and reject other users' instances with AccessDenied; connector
methods are authenticated by the instance API key instead.
"""
import hmac
import secrets
import time

import httpx

from gateway.database import utcnow
from gateway.exceptions import (
    AccessDenied,
    InstanceNotFound,
    InstanceNotReady,
    InvalidAction,
    InvalidApiKey,
    InvalidEventType,
    InvalidWebhookConfig,
)
from gateway.logging_config import get_logger
from gateway.models.instance import Instance, InstanceStatus
from gateway.models.instance_log import InstanceLog, LogLevel
from gateway.models.webhook import EventType, WebhookDelivery
from gateway.repositories.delivery_ledger import DeliveryLedger
from gateway.repositories.instance_repository import InstanceRepository
from gateway.services.event_emitter import EventEmitter, parse_event_type
from gateway.services.state_machine import InstanceStateMachine

log = get_logger(component="instance_service")

CONNECTION_REPORTS = ("provisioned", "running", "error")


def normalize_webhook_config(url: str | None, events: list[str] | None) -> tuple[str | None, list[str] | None]:
    """
    Validate a webhook URL and event list.

    Empty values are stored as None, meaning "no subscription".
    """
    url = (url or "").strip() or None
    if url is not None:
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as e:
            raise InvalidWebhookConfig(f"Invalid webhook URL: {e}") from e
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise InvalidWebhookConfig("Webhook URL must be an absolute http(s) URL")

    if not events:
        return url, None

    normalized = []
    for name in events:
        try:
            event_type = parse_event_type(name)
        except InvalidEventType as e:
            raise InvalidWebhookConfig(e.message) from e
        if event_type.value not in normalized:
            normalized.append(event_type.value)
    return url, normalized


def generate_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class InstanceService:
    """Service for instance control, messaging and webhook configuration."""

    def __init__(
        self,
        instances: InstanceRepository,
        ledger: DeliveryLedger,
        state_machine: InstanceStateMachine,
        emitter: EventEmitter
    ):
        self.instances = instances
        self.ledger = ledger
        self.state_machine = state_machine
        self.emitter = emitter

    # ------------------------------------------------------------------
    # Owner-facing
    # ------------------------------------------------------------------

    async def create_instance(self, caller_id: int, instance_name: str) -> Instance:
        """Provision a new instance row in CREATING status."""
        instance = await self.instances.create_instance(caller_id, instance_name)
        log.info("instance_created", instance_id=instance.id, user_id=caller_id)
        return instance

    async def get_instance(self, caller_id: int, instance_id: int) -> Instance:
        """Get an instance owned by the caller."""
        instance = await self.instances.load_instance(instance_id)
        if instance.user_id != caller_id:
            raise AccessDenied(f"Instance {instance_id} does not belong to caller")
        return instance

    async def list_instances(self, caller_id: int) -> list[Instance]:
        return await self.instances.list_for_user(caller_id)

    async def control_instance(self, caller_id: int, instance_id: int, action: str) -> Instance:
        """Start, stop or restart an instance."""
        return await self.state_machine.control(instance_id, caller_id, action)

    async def update_webhook_config(
        self,
        caller_id: int,
        instance_id: int,
        url: str | None,
        events: list[str] | None
    ) -> Instance:
        """
        Replace the webhook URL and subscribed events.

        Already created deliveries keep the URL they captured.
        """
        url, events = normalize_webhook_config(url, events)
        await self.get_instance(caller_id, instance_id)
        instance = await self.instances.update_webhook_config(instance_id, url, events)
        log.info("webhook_config_updated", instance_id=instance_id, url=url, events=events)
        return instance

    async def send_message(
        self,
        caller_id: int,
        instance_id: int,
        to: str,
        message: str,
        message_type: str = "text"
    ) -> dict:
        """
        Send a message through a running, connected instance.

        The network connector performs the actual send; the gateway checks
        readiness and records the activity.
        """
        instance = await self.get_instance(caller_id, instance_id)
        if instance.status != InstanceStatus.RUNNING:
            raise InstanceNotReady(f"Cannot send message: instance is {instance.status.value}")
        if not instance.can_send_messages():
            raise InstanceNotReady("Instance is not connected")

        message_id = generate_message_id()
        await self.instances.touch_last_seen(instance_id, utcnow())
        await self.instances.append_log(
            instance_id,
            LogLevel.INFO,
            f"Message sent to {to}",
            {"message_id": message_id, "type": message_type},
        )
        log.info("message_sent", instance_id=instance_id, message_id=message_id, type=message_type)
        return {"success": True, "message_id": message_id}

    async def get_qr_code(self, caller_id: int, instance_id: int) -> str | None:
        instance = await self.get_instance(caller_id, instance_id)
        return instance.qr_code

    async def get_instance_logs(self, caller_id: int, instance_id: int, limit: int = 100) -> list[InstanceLog]:
        """Get activity log entries, most recent first."""
        await self.get_instance(caller_id, instance_id)
        return await self.instances.list_logs(instance_id, limit)

    async def list_deliveries(self, caller_id: int, instance_id: int, limit: int = 50) -> list[WebhookDelivery]:
        """
        Get webhook deliveries, most recent first. Read only.

        Unknown instances and instances owned by someone else both list as
        empty, so the endpoint does not reveal which instance ids exist.
        """
        try:
            await self.get_instance(caller_id, instance_id)
        except (InstanceNotFound, AccessDenied):
            log.debug("deliveries_not_visible", instance_id=instance_id, caller_id=caller_id)
            return []
        return await self.ledger.list_by_instance(instance_id, limit)

    # ------------------------------------------------------------------
    # Connector-facing
    # ------------------------------------------------------------------

    async def authenticate_connector(self, instance_id: int, api_key: str) -> Instance:
        """Check the API key presented by the connector for an instance."""
        instance = await self.instances.load_instance(instance_id)
        if not api_key or not hmac.compare_digest(instance.api_key, api_key):
            raise InvalidApiKey()
        return instance

    async def record_event(self, instance_id: int, event_type: str, data: dict) -> WebhookDelivery | None:
        """Inbound event from the connector (message, message_status, ...)."""
        return await self.emitter.record_event(instance_id, event_type, data)

    async def report_connection(
        self,
        instance_id: int,
        status: str,
        phone_number: str | None = None,
        reason: str | None = None
    ) -> Instance:
        """Apply a connection state change reported by the connector."""
        if status == "provisioned":
            return await self.state_machine.mark_provisioned(instance_id)
        if status == InstanceStatus.RUNNING.value:
            return await self.state_machine.mark_running(instance_id, phone_number)
        if status == InstanceStatus.ERROR.value:
            return await self.state_machine.mark_error(instance_id, reason)
        raise InvalidAction(
            f"Invalid connection status '{status}'. Use one of: {', '.join(CONNECTION_REPORTS)}"
        )

    async def update_qr_code(self, instance_id: int, qr_code: str) -> WebhookDelivery | None:
        """Store a refreshed pairing QR code and emit qr_updated."""
        await self.instances.set_qr_code(instance_id, qr_code)
        instance = await self.instances.load_instance(instance_id)
        return await self.emitter.emit(instance, EventType.QR_UPDATED, {"qr_code": qr_code})


