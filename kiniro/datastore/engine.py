"""
Database engine setup and lifecycle.
Async SQLAlchemy engine, SQLite (aiosqlite) by default.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from loguru import logger
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from kiniro.datastore.models import Base
from kiniro.settings import global_settings


class Database:
    """
    Owns one async engine and its session factory.

    Constructed explicitly and passed to the stores that need it; lives
    for the lifetime of the process (or of a test).
    """

    def __init__(self, url: str | None = None, echo: bool | None = None):
        self.url = url or global_settings.database_url
        self.echo = global_settings.database_echo if echo is None else echo
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        """Create the engine, session factory and tables"""
        kwargs = {}
        if ":memory:" in self.url:
            # A single shared connection, otherwise every session sees an empty database
            kwargs = {
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            }

        self.engine = create_async_engine(self.url, echo=self.echo, **kwargs)
        self._session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized: {self.url}")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Transactional session: commit on success, rollback on error"""
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        """Dispose of the engine's connections"""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self._session_factory = None
