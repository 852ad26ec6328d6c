"""
Webhook API routes.

Provides endpoints for configuring an instance's webhook and inspecting
its delivery history.
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from gateway.dependencies.auth import get_current_user, Caller
from gateway.dependencies.services import get_instance_service
from gateway.models.webhook import WebhookDelivery
from gateway.services.instance_service import InstanceService


router = APIRouter(prefix="/api/instances/{instance_id}/webhook", tags=["webhooks"])


class SetWebhookRequest(BaseModel):
    """Request model for setting webhook URL and events."""
    url: str | None = None
    events: list[str] | None = None


class WebhookDeliveryResponse(BaseModel):
    """Response model for a webhook delivery."""
    id: int
    instance_id: int
    event_type: str
    payload: dict
    webhook_url: str
    status: str
    response_status: int | None = None
    response_body: str | None = None
    retry_count: int
    next_retry_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


def delivery_to_response(delivery: WebhookDelivery) -> WebhookDeliveryResponse:
    """Convert WebhookDelivery model to WebhookDeliveryResponse."""
    return WebhookDeliveryResponse(
        id=delivery.id,
        instance_id=delivery.instance_id,
        event_type=delivery.event_type,
        payload=delivery.payload,
        webhook_url=delivery.webhook_url,
        status=delivery.status.value,
        response_status=delivery.response_status,
        response_body=delivery.response_body,
        retry_count=delivery.retry_count,
        next_retry_at=delivery.next_retry_at.isoformat() if delivery.next_retry_at else None,
        created_at=delivery.created_at.isoformat() if delivery.created_at else None,
        updated_at=delivery.updated_at.isoformat() if delivery.updated_at else None,
    )


@router.put("", response_model=dict)
async def set_webhook(
    instance_id: int,
    request: SetWebhookRequest,
    caller: Caller = Depends(get_current_user),
    service: InstanceService = Depends(get_instance_service)
):
    """
    Set webhook URL and subscribed events for the instance.

    The webhook will receive POST requests for each subscribed event.
    Deliveries already created keep the URL they were created with.
    """
    instance = await service.update_webhook_config(
        caller.user_id, instance_id, request.url, request.events
    )
    return {
        "message": "Webhook configured successfully",
        "url": instance.webhook_url,
        "events": instance.webhook_events,
    }


@router.get("", response_model=dict)
async def get_webhook(
    instance_id: int,
    caller: Caller = Depends(get_current_user),
    service: InstanceService = Depends(get_instance_service)
):
    """Get current webhook configuration for the instance."""
    instance = await service.get_instance(caller.user_id, instance_id)
    return {
        "url": instance.webhook_url,
        "events": instance.webhook_events,
        "configured": instance.webhook_url is not None
    }


@router.delete("", response_model=dict)
async def delete_webhook(
    instance_id: int,
    caller: Caller = Depends(get_current_user),
    service: InstanceService = Depends(get_instance_service)
):
    """Remove webhook configuration for the instance."""
    await service.update_webhook_config(caller.user_id, instance_id, None, None)
    return {"message": "Webhook removed successfully"}


@router.get("/deliveries", response_model=list[WebhookDeliveryResponse])
async def list_deliveries(
    instance_id: int,
    limit: int = Query(50, ge=1, le=500),
    caller: Caller = Depends(get_current_user),
    service: InstanceService = Depends(get_instance_service)
):
    """
    List webhook deliveries for the instance, most recent first.

    Pure read; safe to poll.
    """
    deliveries = await service.list_deliveries(caller.user_id, instance_id, limit)
    return [delivery_to_response(delivery) for delivery in deliveries]
