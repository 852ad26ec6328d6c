"""
Service wiring.

Builds the repositories, delivery pipeline and state machine once per
application and exposes them to routes through FastAPI dependencies.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from gateway.database import AsyncSessionLocal, utcnow
from gateway.repositories.delivery_ledger import DeliveryLedger
from gateway.repositories.instance_repository import InstanceRepository
from gateway.services.delivery_scheduler import DeliveryScheduler
from gateway.services.delivery_worker import DeliveryWorkerPool
from gateway.services.event_emitter import EventEmitter
from gateway.services.instance_service import InstanceService
from gateway.services.state_machine import InstanceStateMachine


@dataclass
class Services:
    """Application-wide collaborators."""
    instances: InstanceRepository
    ledger: DeliveryLedger
    scheduler: DeliveryScheduler
    emitter: EventEmitter
    state_machine: InstanceStateMachine
    instance_service: InstanceService


def build_services(
    session_factory: async_sessionmaker = AsyncSessionLocal,
    worker_pool: DeliveryWorkerPool | None = None,
    clock: Callable[[], datetime] = utcnow
) -> Services:
    """Assemble the gateway around one session factory."""
    instances = InstanceRepository(session_factory)
    ledger = DeliveryLedger(session_factory)
    scheduler = DeliveryScheduler(ledger, worker_pool or DeliveryWorkerPool(), clock=clock)
    emitter = EventEmitter(ledger, instances, scheduler=scheduler, clock=clock)
    state_machine = InstanceStateMachine(instances, emitter)
    instance_service = InstanceService(instances, ledger, state_machine, emitter)
    return Services(
        instances=instances,
        ledger=ledger,
        scheduler=scheduler,
        emitter=emitter,
        state_machine=state_machine,
        instance_service=instance_service,
    )


def get_services(request: Request) -> Services:
    """Services attached to the app during startup."""
    return request.app.state.services


def get_instance_service(services: Services = Depends(get_services)) -> InstanceService:
    return services.instance_service
