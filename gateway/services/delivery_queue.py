"""
Delivery Queue

Priority structure of pending webhook deliveries keyed by
(next_retry_at, delivery id). Every mutation happens inside one lock;
HTTP I/O never does.
"""
import heapq
import threading
from dataclasses import dataclass, replace
from datetime import datetime

from gateway.database import as_utc
from gateway.models.webhook import WebhookDelivery


@dataclass(frozen=True)
class ScheduledDelivery:
    """
    Scheduling snapshot of a pending delivery.

    Decoupled from the ORM row so it can cross task boundaries without
    a session.
    """
    id: int
    instance_id: int
    event_type: str
    webhook_url: str
    payload: dict
    retry_count: int
    next_retry_at: datetime

    @classmethod
    def from_row(cls, row: WebhookDelivery) -> "ScheduledDelivery":
        return cls(
            id=row.id,
            instance_id=row.instance_id,
            event_type=row.event_type,
            webhook_url=row.webhook_url,
            payload=row.payload,
            retry_count=row.retry_count,
            next_retry_at=as_utc(row.next_retry_at) or as_utc(row.created_at),
        )

    def rescheduled(self, next_retry_at: datetime, retry_count: int | None = None) -> "ScheduledDelivery":
        return replace(
            self,
            next_retry_at=next_retry_at,
            retry_count=self.retry_count if retry_count is None else retry_count,
        )


class DeliveryQueue:
    """
    Min-heap of deliveries waiting for their next attempt.

    A delivery is either queued, in flight, or unknown to the queue.
    In-flight deliveries are never pushed or popped until released, so
    one delivery cannot be handed to two workers at once.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._heap: list[tuple[datetime, int]] = []
        self._queued: dict[int, ScheduledDelivery] = {}
        self._in_flight: set[int] = set()

    def push(self, delivery: ScheduledDelivery) -> bool:
        """
        Queue a delivery, replacing any queued entry with the same ID.

        Returns:
            False if the delivery is currently in flight (ignored)
        """
        with self._lock:
            if delivery.id in self._in_flight:
                return False
            self._push_locked(delivery)
            return True

    def pop_due(self, now: datetime, limit: int | None = None) -> list[ScheduledDelivery]:
        """
        Remove and return deliveries with next_retry_at <= now.

        Returned deliveries are marked in flight, in (next_retry_at, id) order.
        """
        due = []
        with self._lock:
            while self._heap and (limit is None or len(due) < limit):
                next_retry_at, delivery_id = self._heap[0]
                current = self._queued.get(delivery_id)
                if current is None or current.next_retry_at != next_retry_at:
                    # Stale heap entry left by a replace or release
                    heapq.heappop(self._heap)
                    continue
                if next_retry_at > now:
                    break
                heapq.heappop(self._heap)
                del self._queued[delivery_id]
                self._in_flight.add(delivery_id)
                due.append(current)
        return due

    def requeue(self, delivery: ScheduledDelivery) -> None:
        """Release an in-flight delivery and queue it again in one step."""
        with self._lock:
            self._in_flight.discard(delivery.id)
            self._push_locked(delivery)

    def release(self, delivery_id: int) -> None:
        """Forget an in-flight delivery (it reached a terminal status)."""
        with self._lock:
            self._in_flight.discard(delivery_id)

    def next_due_at(self) -> datetime | None:
        """Earliest next_retry_at among queued deliveries."""
        with self._lock:
            while self._heap:
                next_retry_at, delivery_id = self._heap[0]
                current = self._queued.get(delivery_id)
                if current is not None and current.next_retry_at == next_retry_at:
                    return next_retry_at
                heapq.heappop(self._heap)
            return None

    def is_in_flight(self, delivery_id: int) -> bool:
        with self._lock:
            return delivery_id in self._in_flight

    def __contains__(self, delivery_id: int) -> bool:
        with self._lock:
            return delivery_id in self._queued

    def __len__(self) -> int:
        with self._lock:
            return len(self._queued)

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def _push_locked(self, delivery: ScheduledDelivery) -> None:
        self._queued[delivery.id] = delivery
        heapq.heappush(self._heap, (delivery.next_retry_at, delivery.id))
