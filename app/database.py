"""
Database engine and session factory.

The engine is built at process start from DATABASE_URL; nothing connects
until the first query.
"""
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL."""
    kwargs = {"echo": echo}
    if not database_url.startswith("sqlite"):
        kwargs["pool_pre_ping"] = True
    return create_async_engine(database_url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the engine; objects stay usable after commit."""
    return async_sessionmaker(engine, expire_on_commit=False)
