"""
SQL persistence helpers

Each service owns its own database (database per service). Tables are
declared with SQLAlchemy Core so they can be created at start-up; the stores
themselves issue plain text() SQL.
"""

from datetime import datetime, timezone

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


def create_session_factory(database_url: str) -> tuple[AsyncEngine, sessionmaker]:
    engine = create_async_engine(database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, async_session


async def create_tables(engine: AsyncEngine, metadata: MetaData) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def utcnow() -> str:
    """Timestamps are stored as ISO-8601 text so every driver round-trips them unchanged."""
    return datetime.now(timezone.utc).isoformat()
