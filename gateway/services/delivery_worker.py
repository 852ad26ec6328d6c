"""
Delivery Worker Pool

Performs exactly one outbound webhook POST per call. Retrying is the
scheduler's job; workers never write to the ledger.
"""
import asyncio
import json
from dataclasses import dataclass
from datetime import datetime

import httpx

from gateway.config import settings
from gateway.exceptions import DeliveryAttemptFailed
from gateway.logging_config import get_logger
from gateway.services.delivery_queue import ScheduledDelivery

log = get_logger(component="delivery_worker")

USER_AGENT = f"{settings.APP_NAME.replace(' ', '-')}-Webhooks/{settings.APP_VERSION}"


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of a single delivery attempt, reported back to the scheduler."""
    delivery_id: int
    success: bool
    attempted_at: datetime
    response_status: int | None = None
    response_body: str | None = None
    error: str | None = None


def is_success_status(status_code: int) -> bool:
    """A webhook counts as delivered iff the receiver answered 2xx."""
    return 200 <= status_code < 300


class DeliveryWorkerPool:
    """Bounded pool of concurrent webhook POSTs over one httpx client."""

    def __init__(
        self,
        size: int | None = None,
        timeout: float | None = None,
        response_body_limit: int | None = None,
        client: httpx.AsyncClient | None = None
    ):
        self.size = size or settings.WEBHOOK_WORKER_POOL_SIZE
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS
        self.response_body_limit = response_body_limit or settings.WEBHOOK_RESPONSE_BODY_LIMIT
        self._semaphore = asyncio.Semaphore(self.size)
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def deliver(self, delivery: ScheduledDelivery, attempted_at: datetime) -> AttemptOutcome:
        """
        POST the delivery payload to its captured URL.

        Returns an AttemptOutcome for every result; transport errors,
        timeouts and non-2xx answers are folded into a failed outcome.
        """
        async with self._semaphore:
            try:
                return await self._post(delivery, attempted_at)
            except DeliveryAttemptFailed as e:
                return AttemptOutcome(
                    delivery_id=delivery.id,
                    success=False,
                    attempted_at=attempted_at,
                    response_status=e.response_status,
                    response_body=e.response_body,
                    error=e.reason,
                )

    async def _post(self, delivery: ScheduledDelivery, attempted_at: datetime) -> AttemptOutcome:
        body = json.dumps(delivery.payload)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Event": delivery.event_type,
            "X-Webhook-Delivery-Id": str(delivery.id),
        }
        attempt_log = log.bind(
            delivery_id=delivery.id,
            instance_id=delivery.instance_id,
            attempt=delivery.retry_count + 1,
        )

        try:
            response = await asyncio.wait_for(
                self._get_client().post(delivery.webhook_url, content=body, headers=headers),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            attempt_log.warning("webhook_attempt_timeout", timeout=self.timeout)
            raise DeliveryAttemptFailed(delivery.id, f"Timed out after {self.timeout}s") from None
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            attempt_log.warning("webhook_attempt_transport_error", error=str(e))
            raise DeliveryAttemptFailed(delivery.id, str(e) or e.__class__.__name__) from e

        response_body = response.text[: self.response_body_limit] if response.text else None
        if not is_success_status(response.status_code):
            attempt_log.warning("webhook_attempt_rejected", status_code=response.status_code)
            raise DeliveryAttemptFailed(
                delivery.id,
                f"HTTP {response.status_code}",
                response_status=response.status_code,
                response_body=response_body,
            )

        attempt_log.info("webhook_attempt_delivered", status_code=response.status_code)
        return AttemptOutcome(
            delivery_id=delivery.id,
            success=True,
            attempted_at=attempted_at,
            response_status=response.status_code,
            response_body=response_body,
        )

    async def close(self) -> None:
        """Close the HTTP client if this pool created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
