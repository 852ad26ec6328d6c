"""
Instance State Machine

Owns instance lifecycle transitions:

    creating -> stopped -> starting -> running
                   ^          |          |
                   +----------+----------+   (stop)
    any -> starting (restart), any -> error (connector report)

Each transition is one atomic read-modify-write per instance: load,
check legality against the current status, save, then emit a
`connection` event. Transitions on different instances run concurrently.
"""
import asyncio
import weakref
from typing import Awaitable, Callable

from gateway.database import utcnow
from gateway.exceptions import (
    AccessDenied,
    AlreadyInRequestedState,
    IllegalTransition,
    InvalidAction,
    StorageUnavailable,
    TransitionInProgress,
)
from gateway.logging_config import get_logger
from gateway.models.instance import Instance, InstanceAction, InstanceStatus
from gateway.models.instance_log import LogLevel
from gateway.models.webhook import EventType
from gateway.repositories.instance_repository import InstanceRepository
from gateway.routes.metrics import track_transition, track_transition_rejected
from gateway.sentry_config import capture_exception
from gateway.services.event_emitter import EventEmitter

log = get_logger(component="state_machine")


def parse_action(action: str | InstanceAction) -> InstanceAction:
    """Validate a lifecycle action. Raises InvalidAction."""
    try:
        return InstanceAction(action)
    except ValueError:
        raise InvalidAction(f"Invalid action '{action}'. Use start, stop or restart.") from None


def resolve_transition(current: InstanceStatus, action: str | InstanceAction) -> InstanceStatus:
    """
    Target status for a caller-requested action.

    Raises:
        AlreadyInRequestedState: start while running, stop while stopped
        TransitionInProgress: start while creating or starting
    """
    action = parse_action(action)

    if action == InstanceAction.RESTART:
        return InstanceStatus.STARTING

    if action == InstanceAction.START:
        if current in (InstanceStatus.STOPPED, InstanceStatus.ERROR):
            return InstanceStatus.STARTING
        if current == InstanceStatus.RUNNING:
            raise AlreadyInRequestedState("Instance is already running")
        raise TransitionInProgress(f"Instance is {current.value}")

    if current == InstanceStatus.STOPPED:
        raise AlreadyInRequestedState("Instance is already stopped")
    return InstanceStatus.STOPPED


class InstanceStateMachine:
    """Validates and applies lifecycle transitions, one instance at a time."""

    def __init__(self, instances: InstanceRepository, emitter: EventEmitter):
        self.instances = instances
        self.emitter = emitter
        # Entries vanish once no transition holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Caller-requested transitions (ownership checked)
    # ------------------------------------------------------------------

    async def request_start(self, instance_id: int, caller_id: int) -> InstanceStatus:
        instance = await self.control(instance_id, caller_id, InstanceAction.START)
        return instance.status

    async def request_stop(self, instance_id: int, caller_id: int) -> InstanceStatus:
        instance = await self.control(instance_id, caller_id, InstanceAction.STOP)
        return instance.status

    async def request_restart(self, instance_id: int, caller_id: int) -> InstanceStatus:
        instance = await self.control(instance_id, caller_id, InstanceAction.RESTART)
        return instance.status

    async def control(self, instance_id: int, caller_id: int, action: str | InstanceAction) -> Instance:
        """
        Apply start, stop or restart on behalf of the instance owner.

        Returns:
            The instance with its new status
        """
        action = parse_action(action)
        return await self._transition(
            instance_id,
            action.value,
            lambda current: resolve_transition(current, action),
            caller_id=caller_id,
        )

    # ------------------------------------------------------------------
    # Connector-reported transitions
    # ------------------------------------------------------------------

    async def mark_provisioned(self, instance_id: int) -> Instance:
        """Provisioning finished: creating -> stopped."""
        def resolve(current: InstanceStatus) -> InstanceStatus:
            if current != InstanceStatus.CREATING:
                raise IllegalTransition(f"Instance is already provisioned ({current.value})")
            return InstanceStatus.STOPPED

        return await self._transition(instance_id, "provisioned", resolve)

    async def mark_running(self, instance_id: int, phone_number: str | None = None) -> Instance:
        """Connector completed its handshake: starting -> running."""
        def resolve(current: InstanceStatus) -> InstanceStatus:
            if current == InstanceStatus.RUNNING:
                raise AlreadyInRequestedState("Instance is already running")
            if current != InstanceStatus.STARTING:
                raise IllegalTransition(f"Instance cannot become running from {current.value}")
            return InstanceStatus.RUNNING

        async def persist(instance: Instance) -> None:
            now = utcnow()
            await self.instances.mark_connected(instance.id, phone_number, now)
            instance.last_seen = now
            if phone_number:
                instance.phone_number = phone_number

        extra = {"phone_number": phone_number} if phone_number else {}
        return await self._transition(instance_id, "connected", resolve, extra=extra, persist=persist)

    async def mark_error(self, instance_id: int, reason: str | None = None) -> Instance:
        """Connector lost the session or failed to start: any -> error."""
        def resolve(current: InstanceStatus) -> InstanceStatus:
            if current == InstanceStatus.ERROR:
                raise AlreadyInRequestedState("Instance is already in error")
            return InstanceStatus.ERROR

        extra = {"reason": reason} if reason else {}
        return await self._transition(
            instance_id, "error", resolve, extra=extra, level=LogLevel.ERROR
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, instance_id: int) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = self._locks[instance_id] = asyncio.Lock()
        return lock

    async def _transition(
        self,
        instance_id: int,
        action: str,
        resolve: Callable[[InstanceStatus], InstanceStatus],
        caller_id: int | None = None,
        extra: dict | None = None,
        persist: Callable[[Instance], Awaitable[None]] | None = None,
        level: LogLevel = LogLevel.INFO
    ) -> Instance:
        async with self._lock_for(instance_id):
            instance = await self.instances.load_instance(instance_id)
            if caller_id is not None and instance.user_id != caller_id:
                raise AccessDenied(f"Instance {instance_id} does not belong to caller")

            previous = instance.status
            try:
                target = resolve(previous)
            except IllegalTransition as e:
                track_transition_rejected(action, e.__class__.__name__)
                log.info(
                    "instance_transition_rejected",
                    instance_id=instance_id,
                    action=action,
                    status=previous.value,
                    reason=e.message,
                )
                raise

            await self.instances.save_instance_status(instance_id, target)
            instance.status = target
            if persist is not None:
                await persist(instance)

            track_transition(action, target.value)
            log.info(
                "instance_transition",
                instance_id=instance_id,
                action=action,
                previous=previous.value,
                status=target.value,
            )
            await self._after_commit(instance, previous, action, {"status": target.value, **(extra or {})}, level)

        return instance

    async def _after_commit(
        self,
        instance: Instance,
        previous: InstanceStatus,
        action: str,
        data: dict,
        level: LogLevel
    ) -> None:
        # Transition is already committed; failures here are reported, not raised
        try:
            await self.instances.append_log(
                instance.id,
                level,
                f"Instance {action}: {previous.value} -> {instance.status.value}",
                data,
            )
        except StorageUnavailable as e:
            log.warning("instance_log_write_failed", instance_id=instance.id, error=str(e))
            capture_exception(e, instance_id=instance.id)

        try:
            await self.emitter.emit(instance, EventType.CONNECTION, data)
        except StorageUnavailable as e:
            log.error("connection_event_not_recorded", instance_id=instance.id, error=str(e))
            capture_exception(e, instance_id=instance.id)
