"""
Repository tests on in-memory SQLite.

Covers instance persistence, the activity log, and the ledger's
monotonic attempt guard.
"""
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from conftest import T0, WEBHOOK_URL
from gateway.database import session_scope
from gateway.exceptions import InstanceNotFound, StorageUnavailable
from gateway.models.instance import InstanceStatus
from gateway.models.instance_log import LogLevel
from gateway.models.webhook import DeliveryStatus, WebhookDelivery
from gateway.repositories.instance_repository import InstanceRepository


def new_delivery(instance_id: int, created_minutes: int = 0) -> WebhookDelivery:
    created_at = T0 + timedelta(minutes=created_minutes)
    return WebhookDelivery(
        instance_id=instance_id,
        event_type="message",
        payload={"event": "message"},
        webhook_url=WEBHOOK_URL,
        status=DeliveryStatus.PENDING,
        retry_count=0,
        next_retry_at=created_at,
        created_at=created_at,
        updated_at=created_at,
    )


@pytest.mark.asyncio
async def test_create_instance_defaults(instances, owner_id):
    instance = await instances.create_instance(owner_id, "sales")

    assert instance.status == InstanceStatus.CREATING
    assert len(instance.api_key) == 64
    int(instance.api_key, 16)
    assert instance.webhook_url is None
    assert await instances.find_by_api_key(instance.api_key) is not None


@pytest.mark.asyncio
async def test_api_keys_are_unique(instances, owner_id):
    first = await instances.create_instance(owner_id, "a")
    second = await instances.create_instance(owner_id, "b")

    assert first.api_key != second.api_key


@pytest.mark.asyncio
async def test_missing_instance_raises(instances):
    with pytest.raises(InstanceNotFound):
        await instances.load_instance(123)
    with pytest.raises(InstanceNotFound):
        await instances.save_instance_status(123, InstanceStatus.RUNNING)
    with pytest.raises(InstanceNotFound):
        await instances.load_webhook_config(123)


@pytest.mark.asyncio
async def test_list_for_user_only_returns_own_instances(instances, make_instance, owner_id, stranger_id):
    mine = await make_instance(name="mine")
    await make_instance(name="theirs", user_id=stranger_id)

    assert [i.id for i in await instances.list_for_user(owner_id)] == [mine.id]


@pytest.mark.asyncio
async def test_webhook_config_round_trip(instances, make_instance):
    instance = await make_instance()

    await instances.update_webhook_config(instance.id, WEBHOOK_URL, ["message", "connection"])
    config = await instances.load_webhook_config(instance.id)

    assert config.url == WEBHOOK_URL
    assert config.events == ["message", "connection"]


@pytest.mark.asyncio
async def test_logs_are_newest_first(instances, make_instance):
    instance = await make_instance()
    for n in range(3):
        await instances.append_log(instance.id, LogLevel.INFO, f"entry {n}", {"n": n})

    entries = await instances.list_logs(instance.id)
    assert [e.message for e in entries] == ["entry 2", "entry 1", "entry 0"]
    assert entries[0].log_metadata == {"n": 2}
    assert len(await instances.list_logs(instance.id, limit=2)) == 2


@pytest.mark.asyncio
async def test_record_attempt_is_monotonic(ledger, make_instance):
    instance = await make_instance()
    delivery = await ledger.create(new_delivery(instance.id))

    assert await ledger.record_attempt(
        delivery.id, 500, "boom", DeliveryStatus.PENDING, 1, T0 + timedelta(minutes=1)
    )
    # Same retry_count again: stale write
    assert not await ledger.record_attempt(
        delivery.id, 500, "boom", DeliveryStatus.PENDING, 1, T0 + timedelta(minutes=1)
    )
    assert await ledger.record_attempt(delivery.id, 200, "ok", DeliveryStatus.DELIVERED, 2, None)
    # Terminal rows never change again
    assert not await ledger.record_attempt(
        delivery.id, 500, "boom", DeliveryStatus.PENDING, 3, T0 + timedelta(minutes=5)
    )

    row = await ledger.get(delivery.id)
    assert row.status == DeliveryStatus.DELIVERED
    assert row.retry_count == 2
    assert row.response_status == 200
    assert row.next_retry_at is None


@pytest.mark.asyncio
async def test_list_by_instance_newest_first(ledger, make_instance):
    instance = await make_instance()
    other = await make_instance(name="other")
    older = await ledger.create(new_delivery(instance.id, created_minutes=0))
    newer = await ledger.create(new_delivery(instance.id, created_minutes=5))
    await ledger.create(new_delivery(other.id))

    listed = await ledger.list_by_instance(instance.id)

    assert [d.id for d in listed] == [newer.id, older.id]
    assert [d.id for d in await ledger.list_by_instance(instance.id, limit=1)] == [newer.id]


@pytest.mark.asyncio
async def test_list_pending_orders_by_due_time(ledger, make_instance):
    instance = await make_instance()
    late = await ledger.create(new_delivery(instance.id, created_minutes=10))
    early = await ledger.create(new_delivery(instance.id, created_minutes=1))
    done = await ledger.create(new_delivery(instance.id))
    await ledger.record_attempt(done.id, 200, None, DeliveryStatus.DELIVERED, 1, None)

    assert [d.id for d in await ledger.list_pending()] == [early.id, late.id]


@pytest.mark.asyncio
async def test_driver_failures_become_storage_unavailable():
    engine = create_async_engine("sqlite+aiosqlite:////nonexistent-dir/gateway.db")
    repository = InstanceRepository(async_sessionmaker(engine, expire_on_commit=False))

    with pytest.raises(StorageUnavailable):
        await repository.load_instance(1)
    await engine.dispose()


@pytest.mark.asyncio
async def test_session_scope_lets_domain_errors_through(session_factory):
    with pytest.raises(InstanceNotFound):
        async with session_scope(session_factory):
            raise InstanceNotFound()
