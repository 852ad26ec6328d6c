"""
Delivery scheduler tests.

Retry timing, the attempt cap, ledger outages, restart recovery,
shutdown and backpressure. The scheduler is driven step by step with
dispatch_due()/drain() and a manual clock unless the test is about the
background loop itself.
"""
import asyncio
from datetime import timedelta

import pytest

from conftest import T0, WEBHOOK_URL, FakeWorkerPool, wait_until
from gateway.exceptions import StorageUnavailable
from gateway.models.instance import InstanceStatus
from gateway.models.webhook import DeliveryStatus, WebhookDelivery
from gateway.services.delivery_scheduler import DeliveryScheduler, plan_next_attempt

SCHEDULE = [timedelta(seconds=s) for s in (60, 300, 1500, 7200, 36000)]


@pytest.mark.parametrize("retry_count", [0, 1, 2, 3])
def test_failed_attempt_waits_backoff_of_its_retry_count(retry_count):
    plan = plan_next_attempt(retry_count, False, T0, SCHEDULE, 5)

    assert plan.status == DeliveryStatus.PENDING
    assert plan.retry_count == retry_count + 1
    assert plan.next_retry_at == T0 + SCHEDULE[retry_count]


def test_fifth_failure_is_final():
    plan = plan_next_attempt(4, False, T0, SCHEDULE, 5)

    assert plan.status == DeliveryStatus.FAILED
    assert plan.retry_count == 5
    assert plan.next_retry_at is None


@pytest.mark.parametrize("retry_count", [0, 2, 4])
def test_success_at_any_retry_count(retry_count):
    plan = plan_next_attempt(retry_count, True, T0, SCHEDULE, 5)

    assert plan.status == DeliveryStatus.DELIVERED
    assert plan.retry_count == retry_count + 1
    assert plan.next_retry_at is None


@pytest.fixture
def subscribed(make_instance):
    async def _make():
        return await make_instance(InstanceStatus.RUNNING, WEBHOOK_URL, ["message"])
    return _make


async def run_due(scheduler) -> int:
    started = scheduler.dispatch_due()
    await scheduler.drain()
    return len(started)


@pytest.mark.asyncio
async def test_retries_follow_backoff_from_attempt_time(scheduler, emitter, ledger, worker_pool, clock, subscribed):
    worker_pool.statuses = [500, 500]
    instance = await subscribed()
    delivery = await emitter.record_event(instance.id, "message", {"text": "hi"})

    assert await run_due(scheduler) == 1
    row = await ledger.get(delivery.id)
    assert row.status == DeliveryStatus.PENDING
    assert row.retry_count == 1
    assert row.next_retry_at == T0 + timedelta(minutes=1)
    assert row.response_status == 500

    clock.advance(seconds=30)
    assert await run_due(scheduler) == 0

    clock.advance(seconds=30)
    assert await run_due(scheduler) == 1
    row = await ledger.get(delivery.id)
    assert row.retry_count == 2
    assert row.next_retry_at == T0 + timedelta(minutes=1) + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_five_failures_finalize_delivery(scheduler, emitter, ledger, worker_pool, clock, subscribed):
    worker_pool.default_status = 503
    escalated = []
    scheduler.on_permanent_failure = escalated.append
    instance = await subscribed()
    delivery = await emitter.record_event(instance.id, "message", {"text": "hi"})

    for _ in range(5):
        assert await run_due(scheduler) == 1
        clock.advance(hours=11)

    row = await ledger.get(delivery.id)
    assert row.status == DeliveryStatus.FAILED
    assert row.retry_count == 5
    assert row.next_retry_at is None
    assert [e.delivery_id for e in escalated] == [delivery.id]
    assert escalated[0].attempts == 5

    clock.advance(days=2)
    assert await run_due(scheduler) == 0
    assert len(worker_pool.attempts) == 5
    assert delivery.id not in scheduler.queue


@pytest.mark.asyncio
async def test_success_after_failures_halts_retries(scheduler, emitter, ledger, worker_pool, clock, subscribed):
    worker_pool.statuses = [500, None, 200]
    instance = await subscribed()
    delivery = await emitter.record_event(instance.id, "message", {"text": "hi"})

    for _ in range(3):
        assert await run_due(scheduler) == 1
        clock.advance(hours=1)

    row = await ledger.get(delivery.id)
    assert row.status == DeliveryStatus.DELIVERED
    assert row.retry_count == 3
    assert row.next_retry_at is None
    assert row.response_status == 200

    clock.advance(days=1)
    assert await run_due(scheduler) == 0
    assert len(worker_pool.attempts) == 3


@pytest.mark.asyncio
async def test_transport_error_records_no_status(scheduler, emitter, ledger, worker_pool, subscribed):
    worker_pool.statuses = [None]
    instance = await subscribed()
    delivery = await emitter.record_event(instance.id, "message", {})

    await run_due(scheduler)

    row = await ledger.get(delivery.id)
    assert row.retry_count == 1
    assert row.response_status is None
    assert row.status == DeliveryStatus.PENDING


@pytest.mark.asyncio
async def test_ledger_outage_requeues_without_counting(
    scheduler, emitter, ledger, clock, subscribed, monkeypatch
):
    instance = await subscribed()
    delivery = await emitter.record_event(instance.id, "message", {})

    async def unavailable(*args, **kwargs):
        raise StorageUnavailable("database is down")

    monkeypatch.setattr(ledger, "record_attempt", unavailable)
    await run_due(scheduler)

    row = await ledger.get(delivery.id)
    assert row.status == DeliveryStatus.PENDING
    assert row.retry_count == 0
    assert delivery.id in scheduler.queue
    assert scheduler.queue.next_due_at() == T0 + timedelta(seconds=30)

    monkeypatch.undo()
    clock.advance(seconds=30)
    await run_due(scheduler)

    row = await ledger.get(delivery.id)
    assert row.status == DeliveryStatus.DELIVERED
    assert row.retry_count == 1


@pytest.mark.asyncio
async def test_rehydrate_makes_overdue_rows_due(scheduler, ledger, worker_pool, clock, subscribed):
    instance = await subscribed()

    def row(minutes: int, status=DeliveryStatus.PENDING, retry_count: int = 1):
        return WebhookDelivery(
            instance_id=instance.id,
            event_type="message",
            payload={"event": "message"},
            webhook_url=WEBHOOK_URL,
            status=status,
            retry_count=retry_count,
            next_retry_at=T0 + timedelta(minutes=minutes),
            created_at=T0 - timedelta(hours=1),
            updated_at=T0 - timedelta(hours=1),
        )

    overdue = [await ledger.create(row(-30)), await ledger.create(row(-5))]
    future = await ledger.create(row(10))
    await ledger.create(row(-60, DeliveryStatus.DELIVERED))

    assert await scheduler.rehydrate() == 3
    assert await run_due(scheduler) == 2
    assert sorted(a[0] for a in worker_pool.attempts) == sorted(d.id for d in overdue)
    assert future.id in scheduler.queue


@pytest.mark.asyncio
async def test_start_rehydrates_and_delivers_in_background(scheduler, ledger, worker_pool, subscribed):
    instance = await subscribed()
    pending = await ledger.create(WebhookDelivery(
        instance_id=instance.id,
        event_type="message",
        payload={"event": "message"},
        webhook_url=WEBHOOK_URL,
        status=DeliveryStatus.PENDING,
        retry_count=2,
        next_retry_at=T0 - timedelta(hours=3),
        created_at=T0 - timedelta(hours=4),
        updated_at=T0 - timedelta(hours=4),
    ))

    await scheduler.start()
    try:
        assert scheduler.running
        await wait_until(lambda: len(worker_pool.attempts) == 1 and scheduler.in_flight == 0)
    finally:
        await scheduler.stop()

    row = await ledger.get(pending.id)
    assert row.status == DeliveryStatus.DELIVERED
    assert row.retry_count == 3
    assert worker_pool.closed


@pytest.mark.asyncio
async def test_enqueue_wakes_running_loop(scheduler, emitter, ledger, worker_pool, subscribed):
    instance = await subscribed()
    await scheduler.start()
    try:
        delivery = await emitter.record_event(instance.id, "message", {"text": "hi"})
        await wait_until(lambda: len(worker_pool.attempts) == 1 and scheduler.in_flight == 0)
    finally:
        await scheduler.stop()

    assert (await ledger.get(delivery.id)).status == DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_shutdown_aborts_hung_attempt_as_failure(ledger, clock, subscribed, emitter):
    pool = FakeWorkerPool(timeout=0.01)
    pool.gate = asyncio.Event()
    scheduler = DeliveryScheduler(ledger, pool, clock=clock, shutdown_grace_seconds=0)
    emitter.scheduler = scheduler
    instance = await subscribed()

    await scheduler.start()
    delivery = await emitter.record_event(instance.id, "message", {})
    await wait_until(lambda: len(pool.attempts) == 1)
    await scheduler.stop()

    row = await ledger.get(delivery.id)
    assert row.status == DeliveryStatus.PENDING
    assert row.retry_count == 1
    assert row.response_status is None
    assert row.next_retry_at == T0 + timedelta(minutes=1)
    assert scheduler.in_flight == 0
    assert pool.closed


@pytest.mark.asyncio
async def test_shutdown_lets_a_started_ledger_write_finish(ledger, clock, subscribed, emitter, monkeypatch):
    pool = FakeWorkerPool(timeout=0.01)
    scheduler = DeliveryScheduler(ledger, pool, clock=clock, shutdown_grace_seconds=0)
    emitter.scheduler = scheduler
    instance = await subscribed()
    writing = asyncio.Event()
    record_attempt = ledger.record_attempt

    async def slow_record_attempt(*args, **kwargs):
        writing.set()
        await asyncio.sleep(0.2)
        return await record_attempt(*args, **kwargs)

    monkeypatch.setattr(ledger, "record_attempt", slow_record_attempt)
    await scheduler.start()
    delivery = await emitter.record_event(instance.id, "message", {})
    await wait_until(writing.is_set)
    await scheduler.stop()

    row = await ledger.get(delivery.id)
    assert row.status == DeliveryStatus.DELIVERED
    assert row.retry_count == 1
    assert row.response_status == 200
    assert not scheduler.queue.is_in_flight(delivery.id)
    assert scheduler.in_flight == 0


@pytest.mark.asyncio
async def test_unexpected_ledger_error_releases_delivery(
    scheduler, emitter, ledger, worker_pool, subscribed, monkeypatch
):
    instance = await subscribed()
    delivery = await emitter.record_event(instance.id, "message", {})

    async def broken(*args, **kwargs):
        raise RuntimeError("constraint violated")

    monkeypatch.setattr(ledger, "record_attempt", broken)
    await run_due(scheduler)

    assert not scheduler.queue.is_in_flight(delivery.id)
    assert delivery.id not in scheduler.queue
    assert scheduler.in_flight == 0

    monkeypatch.undo()
    assert await scheduler.rehydrate() == 1
    await run_due(scheduler)

    row = await ledger.get(delivery.id)
    assert row.status == DeliveryStatus.DELIVERED
    assert row.retry_count == 1
    assert len(worker_pool.attempts) == 2


@pytest.mark.asyncio
async def test_backpressure_keeps_excess_deliveries_queued(ledger, clock, subscribed, emitter):
    pool = FakeWorkerPool(size=2)
    pool.gate = asyncio.Event()
    scheduler = DeliveryScheduler(ledger, pool, clock=clock)
    emitter.scheduler = scheduler
    instance = await subscribed()
    deliveries = [await emitter.record_event(instance.id, "message", {"n": n}) for n in range(3)]

    first = scheduler.dispatch_due()
    assert len(first) == 2
    assert scheduler.dispatch_due() == []
    assert len(scheduler.queue) == 1

    pool.gate.set()
    await scheduler.drain()
    assert len(scheduler.dispatch_due()) == 1
    await scheduler.drain()

    for delivery in deliveries:
        assert (await ledger.get(delivery.id)).status == DeliveryStatus.DELIVERED
    assert sorted(a[0] for a in pool.attempts) == sorted(d.id for d in deliveries)
