"""
Shared fixtures.

Every test gets a fresh in-memory SQLite database behind the real
repositories, a manual clock, and a worker pool that answers from a
script instead of the network.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from gateway.dependencies.services import build_services
from gateway.models.base import Base
# Import all models to register them with Base
from gateway.models.user import User
from gateway.models.instance import Instance, InstanceStatus  # noqa: F401
from gateway.models.instance_log import InstanceLog  # noqa: F401
from gateway.models.webhook import WebhookDelivery  # noqa: F401
from gateway.services.delivery_worker import AttemptOutcome, is_success_status

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
WEBHOOK_URL = "https://hooks.example.com/receiver"


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeWorkerPool:
    """
    Worker pool answering from a list of status codes.

    None in the script stands for a transport error. When `gate` is set,
    every attempt blocks on it before answering.
    """

    def __init__(self, size: int = 10, timeout: float = 0.05, statuses=None):
        self.size = size
        self.timeout = timeout
        self.statuses = list(statuses or [])
        self.default_status = 200
        self.attempts = []
        self.gate: asyncio.Event | None = None
        self.closed = False

    async def deliver(self, delivery, attempted_at):
        self.attempts.append((delivery.id, delivery.retry_count, attempted_at))
        if self.gate is not None:
            await self.gate.wait()

        status = self.statuses.pop(0) if self.statuses else self.default_status
        if status is None:
            return AttemptOutcome(
                delivery_id=delivery.id,
                success=False,
                attempted_at=attempted_at,
                error="Connection refused",
            )
        success = is_success_status(status)
        return AttemptOutcome(
            delivery_id=delivery.id,
            success=success,
            attempted_at=attempted_at,
            response_status=status,
            response_body="ok" if success else "boom",
            error=None if success else f"HTTP {status}",
        )

    async def close(self):
        self.closed = True


async def wait_until(predicate, timeout: float = 2.0):
    """Poll until predicate() is true or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def users(session_factory):
    """IDs of two users: (owner, stranger)."""
    async with session_factory() as db:
        owner = User(email="owner@example.com")
        stranger = User(email="stranger@example.com")
        db.add_all([owner, stranger])
        await db.commit()
        return owner.id, stranger.id


@pytest.fixture
def owner_id(users):
    return users[0]


@pytest.fixture
def stranger_id(users):
    return users[1]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def worker_pool():
    return FakeWorkerPool()


@pytest.fixture
def services(session_factory, worker_pool, clock):
    return build_services(session_factory, worker_pool=worker_pool, clock=clock)


@pytest.fixture
def instances(services):
    return services.instances


@pytest.fixture
def ledger(services):
    return services.ledger


@pytest.fixture
def scheduler(services):
    return services.scheduler


@pytest.fixture
def emitter(services):
    return services.emitter


@pytest.fixture
def state_machine(services):
    return services.state_machine


@pytest.fixture
def instance_service(services):
    return services.instance_service


@pytest.fixture
def make_instance(instances, owner_id):
    """Factory creating an instance in a given status with an optional webhook."""

    async def _make(
        status: InstanceStatus = InstanceStatus.STOPPED,
        webhook_url: str | None = None,
        events: list[str] | None = None,
        user_id: int | None = None,
        name: str = "support-line"
    ) -> Instance:
        instance = await instances.create_instance(user_id or owner_id, name)
        if status != InstanceStatus.CREATING:
            await instances.save_instance_status(instance.id, status)
        if webhook_url or events:
            await instances.update_webhook_config(instance.id, webhook_url, events)
        return await instances.load_instance(instance.id)

    return _make
