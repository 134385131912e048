"""Pytest configuration and shared fixtures."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from listscout.models import Base
from listscout.schemas.record import Record
from listscout.scrapers.store import RecordStore


LISTING_URL = "https://www.linkedin.com/search/results/companies/?keywords=robotics"


@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend for tests."""
    return "asyncio"


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory) -> RecordStore:
    return RecordStore(session_factory)


def company(slug: str, name: str = "", **fields) -> Record:
    """Build a record for linkedin.com/company/<slug>."""
    return Record(
        name=name or slug.replace("-", " ").title(),
        url=f"https://www.linkedin.com/company/{slug}",
        **fields,
    )
