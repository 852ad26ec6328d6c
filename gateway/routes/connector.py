"""
Connector callback routes.

Called by the network connector running an instance. Authenticated with
the instance API key in the X-API-Key header.
"""
from typing import Literal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from gateway.dependencies.auth import get_api_key
from gateway.dependencies.services import get_instance_service
from gateway.routes.instances import InstanceResponse, instance_to_response
from gateway.services.instance_service import InstanceService


router = APIRouter(prefix="/api/connector/instances/{instance_id}", tags=["connector"])


class RecordEventRequest(BaseModel):
    """Inbound event reported by the connector."""
    event: str
    data: dict = Field(default_factory=dict)


class ConnectionReportRequest(BaseModel):
    """Connection state change reported by the connector."""
    status: Literal["provisioned", "running", "error"]
    phone_number: str | None = None
    reason: str | None = None


class QRCodeRequest(BaseModel):
    """Refreshed pairing QR code."""
    qr_code: str = Field(min_length=1)


@router.post("/events", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def record_event(
    instance_id: int,
    request: RecordEventRequest,
    api_key: str = Depends(get_api_key),
    service: InstanceService = Depends(get_instance_service)
):
    """
    Record an event (message, message_status, ...) for webhook delivery.

    Returns immediately; delivery happens in the background.
    """
    await service.authenticate_connector(instance_id, api_key)
    delivery = await service.record_event(instance_id, request.event, request.data)
    return {
        "accepted": True,
        "delivery_id": delivery.id if delivery else None,
    }


@router.post("/connection", response_model=InstanceResponse)
async def report_connection(
    instance_id: int,
    request: ConnectionReportRequest,
    api_key: str = Depends(get_api_key),
    service: InstanceService = Depends(get_instance_service)
):
    """Report provisioning completion, a successful handshake, or an error."""
    await service.authenticate_connector(instance_id, api_key)
    instance = await service.report_connection(
        instance_id,
        request.status,
        phone_number=request.phone_number,
        reason=request.reason,
    )
    return instance_to_response(instance)


@router.post("/qr", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def update_qr_code(
    instance_id: int,
    request: QRCodeRequest,
    api_key: str = Depends(get_api_key),
    service: InstanceService = Depends(get_instance_service)
):
    """Store a refreshed QR code and notify subscribers with qr_updated."""
    await service.authenticate_connector(instance_id, api_key)
    delivery = await service.update_qr_code(instance_id, request.qr_code)
    return {
        "accepted": True,
        "delivery_id": delivery.id if delivery else None,
    }
