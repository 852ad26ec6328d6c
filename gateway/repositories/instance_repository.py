"""
Instance repository.

SECURITY: This repository does not check ownership; callers acting on
behalf of a user MUST compare Instance.user_id with the resolved caller.
"""
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from gateway.database import AsyncSessionLocal, session_scope, utcnow
from gateway.exceptions import InstanceNotFound
from gateway.models.instance import Instance, InstanceStatus
from gateway.models.instance_log import InstanceLog, LogLevel


@dataclass(frozen=True)
class WebhookConfig:
    """Webhook subscription of an instance."""
    url: str | None
    events: list[str] | None


class InstanceRepository:
    """Relational access to instances and their activity log."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def create_instance(self, user_id: int, instance_name: str) -> Instance:
        """
        Create a new instance in CREATING status with a fresh API key.

        Args:
            user_id: Owning user ID
            instance_name: Display name (1-50 chars)

        Returns:
            Newly created Instance
        """
        async with session_scope(self.session_factory) as db:
            instance = Instance(
                user_id=user_id,
                instance_name=instance_name,
                status=InstanceStatus.CREATING,
            )
            db.add(instance)
            await db.commit()
            await db.refresh(instance)
            return instance

    async def load_instance(self, instance_id: int) -> Instance:
        """Get instance by ID. Raises InstanceNotFound."""
        async with session_scope(self.session_factory) as db:
            instance = await db.get(Instance, instance_id)
            if instance is None:
                raise InstanceNotFound(f"Instance {instance_id} not found")
            return instance

    async def find_by_api_key(self, api_key: str) -> Instance | None:
        """Get instance by its API key."""
        async with session_scope(self.session_factory) as db:
            stmt = select(Instance).where(Instance.api_key == api_key)
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def list_for_user(self, user_id: int) -> list[Instance]:
        """Get all instances owned by a user, oldest first."""
        async with session_scope(self.session_factory) as db:
            stmt = select(Instance).where(Instance.user_id == user_id).order_by(Instance.id)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def save_instance_status(self, instance_id: int, status: InstanceStatus) -> None:
        """Persist a new lifecycle status."""
        await self._update(instance_id, status=status, updated_at=utcnow())

    async def load_webhook_config(self, instance_id: int) -> WebhookConfig:
        """Get the current webhook URL and subscribed events."""
        async with session_scope(self.session_factory) as db:
            stmt = select(Instance.webhook_url, Instance.webhook_events).where(
                Instance.id == instance_id
            )
            row = (await db.execute(stmt)).one_or_none()
            if row is None:
                raise InstanceNotFound(f"Instance {instance_id} not found")
            return WebhookConfig(url=row.webhook_url, events=row.webhook_events)

    async def update_webhook_config(
        self,
        instance_id: int,
        url: str | None,
        events: list[str] | None
    ) -> Instance:
        """
        Replace the webhook configuration.

        Deliveries created before this call keep their own URL snapshot.
        """
        await self._update(
            instance_id, webhook_url=url, webhook_events=events, updated_at=utcnow()
        )
        return await self.load_instance(instance_id)

    async def mark_connected(self, instance_id: int, phone_number: str | None, at: datetime) -> None:
        """Record the phone number reported by the connector."""
        values = {"last_seen": at, "updated_at": at}
        if phone_number:
            values["phone_number"] = phone_number
        await self._update(instance_id, **values)

    async def touch_last_seen(self, instance_id: int, at: datetime) -> None:
        """Stamp last successful outbound activity."""
        await self._update(instance_id, last_seen=at, updated_at=at)

    async def set_qr_code(self, instance_id: int, qr_code: str | None) -> None:
        """Store the latest pairing QR code."""
        await self._update(instance_id, qr_code=qr_code, updated_at=utcnow())

    async def append_log(
        self,
        instance_id: int,
        level: LogLevel,
        message: str,
        metadata: dict | None = None
    ) -> InstanceLog:
        """Append an entry to the instance activity log."""
        async with session_scope(self.session_factory) as db:
            entry = InstanceLog(
                instance_id=instance_id,
                level=level,
                message=message,
                log_metadata=metadata,
                created_at=utcnow(),
            )
            db.add(entry)
            await db.commit()
            await db.refresh(entry)
            return entry

    async def list_logs(self, instance_id: int, limit: int = 100) -> list[InstanceLog]:
        """Get log entries for an instance (most recent first)."""
        async with session_scope(self.session_factory) as db:
            stmt = (
                select(InstanceLog)
                .where(InstanceLog.instance_id == instance_id)
                .order_by(InstanceLog.created_at.desc(), InstanceLog.id.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def _update(self, instance_id: int, **values) -> None:
        async with session_scope(self.session_factory) as db:
            stmt = (
                update(Instance)
                .where(Instance.id == instance_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount == 0:
                raise InstanceNotFound(f"Instance {instance_id} not found")
            await db.commit()
