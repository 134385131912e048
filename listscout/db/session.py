"""Async database session and engine configuration."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from listscout.config import settings
from listscout.models.base import Base


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the async engine for the local store.

    Args:
        database_url: Override for settings.DATABASE_URL

    Returns:
        AsyncEngine instance
    """
    url = database_url or settings.DATABASE_URL
    engine_kwargs: dict = {"echo": settings.DEBUG}
    # SQLite doesn't support pool_size / max_overflow / pool_pre_ping
    if not url.startswith("sqlite"):
        engine_kwargs.update(pool_size=5, max_overflow=5, pool_pre_ping=True)
    return create_async_engine(url, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables if they do not exist yet."""
    # Import models so they register with Base.metadata
    from listscout.models import kv_entry  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
