"""
Script to create the invitation tables.

Creates invitation_attempts and system_stats (with its single counters
row) on the database named by DATABASE_URL.
"""
import asyncio
import sys

from app.config import settings
from app.database import build_engine, build_session_factory
from app.services.outcome_store import SqlOutcomeStore


async def create_all_tables(database_url: str = settings.DATABASE_URL):
    """Create all tables and seed the stats row."""
    engine = build_engine(database_url)
    store = SqlOutcomeStore(engine, build_session_factory(engine))
    try:
        await store.create_schema()
        await store.start()
    finally:
        await store.close()
    print("All tables created successfully!")


async def main():
    """Main entry point."""
    database_url = sys.argv[1] if len(sys.argv) > 1 else settings.DATABASE_URL
    print("Creating database tables...")
    await create_all_tables(database_url)
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
