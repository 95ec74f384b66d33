# DB connections

from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
import structlog

from visitrack.models.base import Base
# Imported for their side effect of registering tables on Base.metadata
import visitrack.models.event  # noqa: F401
import visitrack.models.session  # noqa: F401
import visitrack.models.visitor  # noqa: F401

logger = structlog.get_logger()


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool options suited to the backend"""
    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection across sessions
        return create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False}
        )

    # date() and friends bucket by UTC calendar day
    return create_async_engine(
        url,
        echo=echo,
        pool_size=20,
        max_overflow=0,
        connect_args={"options": "-c timezone=UTC"}
    )


class Database:
    """Owns the engine and session factory for one application instance"""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine = build_engine(url, echo=echo)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

    async def create_all(self):
        """Create tables directly (tests and local dev; Alembic otherwise)"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_tables_created")

    async def dispose(self):
        await self.engine.dispose()
        logger.info("database_disposed")


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency for getting async database session"""
    database: Database = request.app.state.database
    async with database.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
