"""Database engine and session management."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from payment_engine.config import settings
from payment_engine.models.payment import Base


def create_session_factory(database_url: str) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Build an engine plus session factory for a database URL.

    Sessions never expire loaded objects on commit, so intents handed back
    to callers stay readable after the unit of work closes.
    """
    db_engine = create_async_engine(database_url, echo=False)
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    return db_engine, factory


engine, async_session = create_session_factory(settings.database_url)


async def init_db(db_engine: AsyncEngine = engine):
    """Create all tables. Safe to call multiple times (CREATE IF NOT EXISTS)."""
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
