"""
Database engine and session factory.

Repositories receive a session factory instead of reaching for a global
session, so tests can hand them an in-memory engine.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from gateway.config import settings
from gateway.exceptions import StorageUnavailable


engine = create_async_engine(settings.DATABASE_URL, echo=False, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def session_scope(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """
    Open a session and translate driver failures into StorageUnavailable.

    Domain errors raised inside the block propagate unchanged.
    """
    try:
        async with session_factory() as session:
            yield session
    except SQLAlchemyError as e:
        raise StorageUnavailable(str(e)) from e
    except OSError as e:
        # Connection refused / DNS failures from the driver
        raise StorageUnavailable(str(e)) from e


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
