"""
Async SQLAlchemy engine + session factory.

Production runs against TiDB (MySQL wire protocol) through the aiomysql
driver; local runs and tests can point `database_url` at SQLite via
aiosqlite. The engine is created once at startup and shared by the Entity
Store and the reconciler worker.
"""
import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from cliphub.config import Settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def create_engine(settings: Settings) -> AsyncEngine:
    url = settings.sqlalchemy_url
    if url.startswith("sqlite"):
        # SQLite serialises writers; give waiting writers room instead of
        # failing fast with "database is locked".
        return create_async_engine(url, connect_args={"timeout": 30}, echo=False)
    return create_async_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        echo=False,
    )


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables if they don't exist (idempotent)."""
    # Import for side effect: registers every model on Base.metadata
    from cliphub import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")
