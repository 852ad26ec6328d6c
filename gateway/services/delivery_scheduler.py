"""
Delivery Scheduler

Single coordination point for webhook retries: decides which deliveries
are due, hands each one to the worker pool at most once at a time, and
serializes every ledger write that follows an attempt.

Retry policy: after the k-th failed attempt the next one is scheduled
WEBHOOK_RETRY_SCHEDULE[k-1] seconds after the failed attempt started
(1m, 5m, 25m, 2h, 10h by default). When WEBHOOK_MAX_ATTEMPTS attempts have
failed the delivery becomes `failed` and is never attempted again.
"""
import asyncio
import inspect
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from typing import Awaitable, Callable

from gateway.config import settings
from gateway.database import utcnow
from gateway.exceptions import DeliveryPermanentlyFailed, StorageUnavailable
from gateway.logging_config import get_logger
from gateway.models.webhook import DeliveryStatus, WebhookDelivery
from gateway.repositories.delivery_ledger import DeliveryLedger
from gateway.routes.metrics import (
    track_webhook_attempt,
    track_webhook_permanently_failed,
    update_queue_depth,
)
from gateway.sentry_config import capture_exception, capture_message
from gateway.services.delivery_queue import DeliveryQueue, ScheduledDelivery
from gateway.services.delivery_worker import AttemptOutcome, DeliveryWorkerPool

log = get_logger(component="delivery_scheduler")

PermanentFailureHook = Callable[[DeliveryPermanentlyFailed], Awaitable[None] | None]


@dataclass(frozen=True)
class DeliveryPlan:
    """Ledger state a delivery moves to after an attempt."""
    status: DeliveryStatus
    retry_count: int
    next_retry_at: datetime | None


def plan_next_attempt(
    retry_count: int,
    success: bool,
    attempted_at: datetime,
    schedule: list[timedelta],
    max_attempts: int
) -> DeliveryPlan:
    """
    Compute the post-attempt state of a delivery.

    Args:
        retry_count: Attempts made before this one
        success: Whether this attempt got a 2xx response
        attempted_at: When this attempt started
        schedule: Backoff after the 1st, 2nd, ... failed attempt
        max_attempts: Attempts after which a delivery is finalized as failed
    """
    attempts = retry_count + 1
    if success:
        return DeliveryPlan(DeliveryStatus.DELIVERED, attempts, None)
    if attempts >= max_attempts:
        return DeliveryPlan(DeliveryStatus.FAILED, attempts, None)
    delay = schedule[min(retry_count, len(schedule) - 1)]
    return DeliveryPlan(DeliveryStatus.PENDING, attempts, attempted_at + delay)


class DeliveryScheduler:
    """
    Background scheduler driving webhook deliveries to completion.

    Usage:
        scheduler = DeliveryScheduler(DeliveryLedger(), DeliveryWorkerPool())
        await scheduler.start()     # reloads pending rows, starts the loop
        scheduler.enqueue(delivery) # called by the event emitter
        await scheduler.stop()
    """

    def __init__(
        self,
        ledger: DeliveryLedger,
        worker_pool: DeliveryWorkerPool,
        queue: DeliveryQueue | None = None,
        retry_schedule: list[int] | None = None,
        max_attempts: int | None = None,
        storage_retry_seconds: int | None = None,
        shutdown_grace_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
        on_permanent_failure: PermanentFailureHook | None = None
    ):
        self.ledger = ledger
        self.worker_pool = worker_pool
        self.queue = queue or DeliveryQueue()
        self.retry_schedule = [
            timedelta(seconds=s)
            for s in (retry_schedule or settings.WEBHOOK_RETRY_SCHEDULE)
        ]
        self.max_attempts = max_attempts or settings.WEBHOOK_MAX_ATTEMPTS
        self.storage_retry_delay = timedelta(
            seconds=storage_retry_seconds or settings.WEBHOOK_STORAGE_RETRY_SECONDS
        )
        grace = (
            settings.WEBHOOK_SHUTDOWN_GRACE_SECONDS
            if shutdown_grace_seconds is None else shutdown_grace_seconds
        )
        self.shutdown_timeout = worker_pool.timeout + grace
        self.clock = clock
        self.on_permanent_failure = on_permanent_failure

        self._report_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._tasks: dict[int, asyncio.Task] = {}
        self._loop_task: asyncio.Task | None = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Rehydrate pending deliveries from the ledger and start the loop."""
        if self.running:
            return
        self._stopping = False
        restored = await self.rehydrate()
        self._loop_task = asyncio.create_task(self._run(), name="webhook-scheduler")
        log.info("scheduler_started", restored=restored, pool_size=self.worker_pool.size)

    async def stop(self) -> None:
        """
        Stop dispatching and settle in-flight attempts.

        Attempts still running after the HTTP timeout plus grace period are
        cancelled and recorded as failed attempts. Queued deliveries that
        never started are left untouched in the ledger.
        """
        self._stopping = True
        self._wakeup.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        tasks = list(self._tasks.values())
        if tasks:
            log.info("scheduler_draining", in_flight=len(tasks))
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        await self.worker_pool.close()
        log.info("scheduler_stopped", queued=len(self.queue))

    async def rehydrate(self) -> int:
        """
        Reload every pending delivery from the ledger into the queue.

        Deliveries whose next_retry_at already passed are due immediately.

        Returns:
            Number of deliveries queued
        """
        rows = await self.ledger.list_pending()
        restored = 0
        for row in rows:
            if row.id in self._tasks:
                continue
            if self.queue.push(ScheduledDelivery.from_row(row)):
                restored += 1
        self._wakeup.set()
        self._update_gauges()
        return restored

    # ------------------------------------------------------------------
    # Queue side
    # ------------------------------------------------------------------

    def enqueue(self, delivery: WebhookDelivery | ScheduledDelivery) -> None:
        """Queue a freshly created delivery and wake the loop."""
        if isinstance(delivery, WebhookDelivery):
            delivery = ScheduledDelivery.from_row(delivery)
        self.queue.push(delivery)
        self._wakeup.set()
        self._update_gauges()

    def dispatch_due(self) -> list[asyncio.Task]:
        """
        Start an attempt for every due delivery that fits in a free worker slot.

        Due deliveries beyond the free slots stay queued until a slot frees up.
        """
        free = self.worker_pool.size - len(self._tasks)
        if free <= 0:
            return []

        started = []
        for delivery in self.queue.pop_due(self.clock(), limit=free):
            task = asyncio.create_task(
                self._attempt(delivery),
                name=f"webhook-delivery-{delivery.id}"
            )
            self._tasks[delivery.id] = task
            task.add_done_callback(partial(self._forget, delivery.id))
            started.append(task)

        if started:
            self._update_gauges()
        return started

    async def drain(self) -> None:
        """Wait for every attempt started so far to be reported."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Outcome side
    # ------------------------------------------------------------------

    async def report(self, delivery: ScheduledDelivery, outcome: AttemptOutcome) -> DeliveryPlan | None:
        """
        Apply an attempt outcome: write the ledger, then reschedule or finalize.

        All reports are serialized. The in-memory state only advances after
        the ledger write commits.

        Returns:
            The applied plan, or None if nothing was committed
        """
        try:
            async with self._report_lock:
                return await self._apply(delivery, outcome)
        finally:
            self._wakeup.set()
            self._update_gauges()

    async def _apply(self, delivery: ScheduledDelivery, outcome: AttemptOutcome) -> DeliveryPlan | None:
        plan = plan_next_attempt(
            delivery.retry_count,
            outcome.success,
            outcome.attempted_at,
            self.retry_schedule,
            self.max_attempts,
        )
        delivery_log = log.bind(
            delivery_id=delivery.id,
            instance_id=delivery.instance_id,
            event_type=delivery.event_type,
        )

        try:
            applied = await self.ledger.record_attempt(
                delivery.id,
                response_status=outcome.response_status,
                response_body=outcome.response_body,
                status=plan.status,
                retry_count=plan.retry_count,
                next_retry_at=plan.next_retry_at,
            )
        except StorageUnavailable as e:
            retry_at = self.clock() + self.storage_retry_delay
            self.queue.requeue(delivery.rescheduled(retry_at))
            delivery_log.error(
                "ledger_write_failed",
                error=str(e),
                retry_count=delivery.retry_count,
                requeued_for=retry_at.isoformat(),
            )
            capture_exception(e, delivery_id=delivery.id, instance_id=delivery.instance_id)
            return None

        if not applied:
            # Row is already terminal or ahead of us; stop tracking it
            self.queue.release(delivery.id)
            return None

        if plan.status == DeliveryStatus.DELIVERED:
            self.queue.release(delivery.id)
            delivery_log.info("webhook_delivered", attempts=plan.retry_count)
        elif plan.status == DeliveryStatus.PENDING:
            self.queue.requeue(delivery.rescheduled(plan.next_retry_at, plan.retry_count))
            delivery_log.warning(
                "webhook_retry_scheduled",
                error=outcome.error,
                retry_count=plan.retry_count,
                next_retry_at=plan.next_retry_at.isoformat(),
            )
        else:
            self.queue.release(delivery.id)
            await self._escalate(delivery, outcome, plan)

        return plan

    async def _escalate(self, delivery: ScheduledDelivery, outcome: AttemptOutcome, plan: DeliveryPlan) -> None:
        failure = DeliveryPermanentlyFailed(delivery.id, plan.retry_count, outcome.error)
        log.error(
            "webhook_permanently_failed",
            delivery_id=delivery.id,
            instance_id=delivery.instance_id,
            event_type=delivery.event_type,
            attempts=plan.retry_count,
            error=outcome.error,
        )
        track_webhook_permanently_failed(delivery.event_type)
        capture_message(
            str(failure),
            level="warning",
            delivery_id=delivery.id,
            instance_id=delivery.instance_id,
        )

        if self.on_permanent_failure is None:
            return
        try:
            result = self.on_permanent_failure(failure)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.exception("permanent_failure_hook_failed", delivery_id=delivery.id)
            capture_exception(e, delivery_id=delivery.id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _attempt(self, delivery: ScheduledDelivery) -> None:
        attempted_at = self.clock()
        started = time.monotonic()
        cancelled = False
        try:
            outcome = await self.worker_pool.deliver(delivery, attempted_at)
        except asyncio.CancelledError:
            cancelled = True
            outcome = AttemptOutcome(
                delivery_id=delivery.id,
                success=False,
                attempted_at=attempted_at,
                error="Aborted at shutdown",
            )
        except Exception as e:
            log.exception("webhook_worker_crashed", delivery_id=delivery.id)
            capture_exception(e, delivery_id=delivery.id, instance_id=delivery.instance_id)
            outcome = AttemptOutcome(
                delivery_id=delivery.id,
                success=False,
                attempted_at=attempted_at,
                error=f"Worker error: {e}",
            )

        # The ledger write runs in its own task so cancelling the attempt
        # cannot interrupt it halfway
        settle = asyncio.ensure_future(self._settle(delivery, outcome, started))
        try:
            await asyncio.shield(settle)
        except asyncio.CancelledError:
            cancelled = True
            await asyncio.wait([settle])
            if not settle.cancelled() and settle.exception() is not None:
                self._report_crashed(delivery, settle.exception())
        except Exception as e:
            self._report_crashed(delivery, e)
        finally:
            if self.queue.is_in_flight(delivery.id):
                # Nothing was requeued or released; the row stays pending for rehydrate
                self.queue.release(delivery.id)
                self._update_gauges()

        if cancelled:
            raise asyncio.CancelledError()

    def _report_crashed(self, delivery: ScheduledDelivery, error: BaseException) -> None:
        log.error(
            "webhook_report_failed",
            delivery_id=delivery.id,
            instance_id=delivery.instance_id,
            error=str(error),
        )
        capture_exception(error, delivery_id=delivery.id, instance_id=delivery.instance_id)

    async def _settle(self, delivery: ScheduledDelivery, outcome: AttemptOutcome, started: float) -> None:
        plan = await self.report(delivery, outcome)
        if plan is None:
            label = "not_recorded"
        elif plan.status == DeliveryStatus.PENDING:
            label = "retrying"
        else:
            label = plan.status.value
        track_webhook_attempt(label, time.monotonic() - started)

    def _forget(self, delivery_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(delivery_id) is task:
            del self._tasks[delivery_id]
        self._wakeup.set()
        if not task.cancelled() and task.exception() is not None:
            log.error(
                "webhook_attempt_task_failed",
                delivery_id=delivery_id,
                error=str(task.exception()),
            )

    def _seconds_until_next_due(self) -> float | None:
        if len(self._tasks) >= self.worker_pool.size:
            return None
        next_due = self.queue.next_due_at()
        if next_due is None:
            return None
        return max((next_due - self.clock()).total_seconds(), 0.0)

    def _update_gauges(self) -> None:
        update_queue_depth(len(self.queue), len(self._tasks))

    async def _run(self) -> None:
        while not self._stopping:
            self._wakeup.clear()
            self.dispatch_due()
            timeout = self._seconds_until_next_due()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
