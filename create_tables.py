"""
Script to create all database tables.

Creates the gateway tables from the models, for local development
without running the Alembic migrations.
"""
import asyncio
import sys

from gateway.database import engine
from gateway.models.base import Base
# Import all models to register them with Base
from gateway.models.user import User  # noqa: F401
from gateway.models.instance import Instance  # noqa: F401
from gateway.models.instance_log import InstanceLog  # noqa: F401
from gateway.models.webhook import WebhookDelivery  # noqa: F401


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main(reset: bool = False):
    """Main entry point."""
    if reset:
        await drop_all_tables()
    print("Creating database tables...")
    await create_all_tables()
    await engine.dispose()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main(reset="--reset" in sys.argv))
