"""
Instance API routes.

Provides endpoints for provisioning, controlling and messaging through
the caller's instances.
"""
from typing import Literal

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from gateway.dependencies.auth import get_current_user, Caller
from gateway.dependencies.services import get_instance_service
from gateway.models.instance import Instance, InstanceAction
from gateway.models.instance_log import InstanceLog
from gateway.services.instance_service import InstanceService


router = APIRouter(prefix="/api/instances", tags=["instances"])


# Pydantic models for request/response
class CreateInstanceRequest(BaseModel):
    """Request model for creating an instance."""
    instance_name: str = Field(min_length=1, max_length=50)


class ControlInstanceRequest(BaseModel):
    """Request model for a lifecycle action."""
    action: InstanceAction


class SendMessageRequest(BaseModel):
    """Request model for sending a message."""
    to: str = Field(min_length=1)
    message: str
    type: Literal["text", "image", "document"] = "text"


class InstanceResponse(BaseModel):
    """Response model for an instance."""
    id: int
    user_id: int
    instance_name: str
    status: str
    qr_code: str | None = None
    phone_number: str | None = None
    webhook_url: str | None = None
    webhook_events: list[str] | None = None
    api_key: str
    last_seen: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class InstanceLogResponse(BaseModel):
    """Response model for an instance log entry."""
    id: int
    instance_id: int
    level: str
    message: str
    metadata: dict | None = None
    created_at: str | None = None


def instance_to_response(instance: Instance) -> InstanceResponse:
    """Convert Instance model to InstanceResponse."""
    return InstanceResponse(
        id=instance.id,
        user_id=instance.user_id,
        instance_name=instance.instance_name,
        status=instance.status.value,
        qr_code=instance.qr_code,
        phone_number=instance.phone_number,
        webhook_url=instance.webhook_url,
        webhook_events=instance.webhook_events,
        api_key=instance.api_key,
        last_seen=instance.last_seen.isoformat() if instance.last_seen else None,
        created_at=instance.created_at.isoformat() if instance.created_at else None,
        updated_at=instance.updated_at.isoformat() if instance.updated_at else None,
    )


def log_to_response(entry: InstanceLog) -> InstanceLogResponse:
    """Convert InstanceLog model to InstanceLogResponse."""
    return InstanceLogResponse(
        id=entry.id,
        instance_id=entry.instance_id,
        level=entry.level.value,
        message=entry.message,
        metadata=entry.log_metadata,
        created_at=entry.created_at.isoformat() if entry.created_at else None,
    )


@router.post("", response_model=InstanceResponse, status_code=status.HTTP_201_CREATED)
async def create_instance(
    request: CreateInstanceRequest,
    caller: Caller = Depends(get_current_user),
    service: InstanceService = Depends(get_instance_service)
):
    """
    Provision a new instance.

    The instance starts in `creating`; the connector reports when it is ready.
    """
    instance = await service.create_instance(caller.user_id, request.instance_name)
    return instance_to_response(instance)


@router.get("", response_model=list[InstanceResponse])
async def list_instances(
    caller: Caller = Depends(get_current_user),
    service: InstanceService = Depends(get_instance_service)
):
    """List the caller's instances."""
    instances = await service.list_instances(caller.user_id)
    return [instance_to_response(instance) for instance in instances]


@router.get("/{instance_id}", response_model=InstanceResponse)
async def get_instance(
    instance_id: int,
    caller: Caller = Depends(get_current_user),
    service: InstanceService = Depends(get_instance_service)
):
    """Get one instance."""
    instance = await service.get_instance(caller.user_id, instance_id)
    return instance_to_response(instance)


@router.post("/{instance_id}/control", response_model=InstanceResponse)
async def control_instance(
    instance_id: int,
    request: ControlInstanceRequest,
    caller: Caller = Depends(get_current_user),
    service: InstanceService = Depends(get_instance_service)
):
    """
    Start, stop or restart an instance.

    Returns 409 when the action is illegal from the current status.
    """
    instance = await service.control_instance(caller.user_id, instance_id, request.action)
    return instance_to_response(instance)


@router.post("/{instance_id}/messages", response_model=dict)
async def send_message(
    instance_id: int,
    request: SendMessageRequest,
    caller: Caller = Depends(get_current_user),
    service: InstanceService = Depends(get_instance_service)
):
    """Send a message. The instance must be running with a connected phone."""
    return await service.send_message(
        caller.user_id,
        instance_id,
        to=request.to,
        message=request.message,
        message_type=request.type,
    )


@router.get("/{instance_id}/qr", response_model=dict)
async def get_qr_code(
    instance_id: int,
    caller: Caller = Depends(get_current_user),
    service: InstanceService = Depends(get_instance_service)
):
    """Get the current pairing QR code, if any."""
    qr_code = await service.get_qr_code(caller.user_id, instance_id)
    return {"qr_code": qr_code}


@router.get("/{instance_id}/logs", response_model=list[InstanceLogResponse])
async def get_instance_logs(
    instance_id: int,
    limit: int = Query(100, ge=1, le=500),
    caller: Caller = Depends(get_current_user),
    service: InstanceService = Depends(get_instance_service)
):
    """Get instance activity logs, most recent first."""
    entries = await service.get_instance_logs(caller.user_id, instance_id, limit)
    return [log_to_response(entry) for entry in entries]
