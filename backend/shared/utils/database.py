"""
PostgreSQL access for the match and team stores.

One DatabaseManager per process. Repositories open a short session per call:
read_session() for lookups, write_session() for a single atomic change
(conditional match writes, mapping upserts, audit rows).
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class DatabaseManager:
    def __init__(self, settings: Settings | None = None, application_name: str = "fixturehub") -> None:
        self._settings = settings or get_settings()
        self._application_name = application_name
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    async def connect(self) -> None:
        s = self._settings
        self._engine = create_async_engine(
            s.database_url_str,
            pool_size=s.db_pool_min,
            max_overflow=s.db_pool_max - s.db_pool_min,
            pool_pre_ping=True,
            echo=s.debug,
            connect_args={
                "command_timeout": s.db_command_timeout,
                "server_settings": {"application_name": self._application_name},
            },
        )
        self._sessions = async_sessionmaker(bind=self._engine, class_=AsyncSession, expire_on_commit=False)
        await self.ping()
        logger.info("database_connected", url=s.database_url_safe_log, application=self._application_name)

    async def disconnect(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
            logger.info("database_disconnected", application=self._application_name)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DatabaseManager not connected. Call connect() first.")
        return self._engine

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._sessions is None:
            raise RuntimeError("DatabaseManager not connected. Call connect() first.")
        return self._sessions

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def create_schema(self) -> None:
        """Create any missing tables (sports, leagues, teams, mappings, matches, transitions)."""
        from shared.models.orm import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        async with self._factory()() as session:
            yield session

    @asynccontextmanager
    async def write_session(self) -> AsyncIterator[AsyncSession]:
        """Commit when the block completes; any exception rolls the whole change back."""
        async with self._factory()() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
