"""
Database configuration and session management

The engine and session factory belong to a Database instance built from
settings, so the API process, the arq worker and tests each own theirs.
PostgreSQL (asyncpg) gets pooled connections; SQLite (aiosqlite) is for local
development and tests.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def _engine_options(database_url: str, environment: str, settings) -> dict:
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
            # One shared connection, otherwise every session sees an empty database
            return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        return {"connect_args": {"check_same_thread": False}}

    if environment == "production":
        return {
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_recycle": settings.DB_POOL_RECYCLE,
            "pool_pre_ping": True,
        }
    return {"pool_size": 2, "max_overflow": 5, "pool_pre_ping": True}


class Database:
    """Engine plus session factory."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.sessionmaker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings) -> "Database":
        engine = create_async_engine(
            settings.DATABASE_URL,
            echo=settings.DEBUG,
            **_engine_options(settings.DATABASE_URL, settings.ENVIRONMENT, settings),
        )
        return cls(engine)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Transactional session: commits on success, rolls back on error.

        Usage:
            async with database.session() as db:
                await db.execute(...)
        """
        async with self.sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self):
        # Register ORM tables on Base.metadata
        import bookstack.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("[Database] Tables ensured")

    async def dispose(self):
        await self.engine.dispose()
