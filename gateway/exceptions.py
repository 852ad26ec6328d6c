"""
Gateway error taxonomy.

Lifecycle and access errors are raised synchronously to the caller and
mapped to HTTP responses in gateway.main. Delivery errors never reach a
caller: the scheduler records them in the ledger.
"""


class GatewayError(Exception):
    """Base class for all gateway errors."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class AccessDenied(GatewayError):
    """Caller does not own the instance."""

    status_code = 403


class InvalidApiKey(GatewayError):
    """Instance API key is missing or does not match."""

    status_code = 401


class InstanceNotFound(GatewayError):
    """Instance not found."""

    status_code = 404


class IllegalTransition(GatewayError):
    """Requested lifecycle transition is not allowed from the current state."""

    status_code = 409


class AlreadyInRequestedState(IllegalTransition):
    """Instance is already in the requested state."""


class TransitionInProgress(IllegalTransition):
    """Another lifecycle transition is still in progress for this instance."""


class InstanceNotReady(GatewayError):
    """Instance is not running or not connected."""

    status_code = 409


class InvalidAction(GatewayError, ValueError):
    """Unknown lifecycle action."""

    status_code = 422


class InvalidEventType(GatewayError, ValueError):
    """Unknown webhook event type."""

    status_code = 422


class InvalidWebhookConfig(GatewayError, ValueError):
    """Webhook URL or event list is invalid."""

    status_code = 422


class StorageUnavailable(GatewayError):
    """Persistence backend is unavailable."""

    status_code = 503


class DeliveryAttemptFailed(GatewayError):
    """
    A single webhook attempt failed (non-2xx, transport error or timeout).

    Raised inside the worker pool and folded into a failed attempt outcome;
    it never reaches a caller.
    """

    def __init__(
        self,
        delivery_id: int,
        reason: str,
        response_status: int | None = None,
        response_body: str | None = None
    ):
        super().__init__(f"Delivery {delivery_id} attempt failed: {reason}")
        self.delivery_id = delivery_id
        self.reason = reason
        self.response_status = response_status
        self.response_body = response_body


class DeliveryPermanentlyFailed(GatewayError):
    """A webhook delivery exhausted its attempts and will not be retried."""

    def __init__(self, delivery_id: int, attempts: int, reason: str | None = None):
        super().__init__(
            f"Delivery {delivery_id} permanently failed after {attempts} attempts"
            + (f": {reason}" if reason else "")
        )
        self.delivery_id = delivery_id
        self.attempts = attempts
        self.reason = reason
