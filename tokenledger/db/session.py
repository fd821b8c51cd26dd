"""Async SQLAlchemy session management."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tokenledger.config import LedgerSettings, get_settings
from tokenledger.db.base import Base
from tokenledger.logging import logger


class Database:
    """Lazy SQLAlchemy engine/session factory wrapper."""

    def __init__(self, settings: LedgerSettings | None = None) -> None:
        self.settings = settings or get_settings()
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    def _ensure_engine(self) -> None:
        if self._engine is not None:
            return
        db_cfg = self.settings.database
        url = make_url(db_cfg.dsn)
        options: dict = {"echo": db_cfg.echo, "pool_pre_ping": db_cfg.pool_pre_ping}
        # SQLite drivers do not take queue pool sizing arguments.
        if not url.get_backend_name().startswith("sqlite"):
            options.update(
                pool_size=db_cfg.pool_size,
                max_overflow=db_cfg.max_overflow,
                pool_recycle=db_cfg.pool_recycle,
            )
        self._engine = create_async_engine(url, **options)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("db_engine_initialized", dsn=url.render_as_string(hide_password=True))

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        self._ensure_engine()
        assert self._session_factory is not None
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        factory = self.session_factory
        async with factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def create_schema(self) -> None:
        """Create missing ledger tables; existing tables are left untouched."""

        import tokenledger.db.models.core  # noqa: F401

        self._ensure_engine()
        assert self._engine is not None
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("db_schema_ensured", tables=sorted(Base.metadata.tables))

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


def get_database(settings: LedgerSettings | None = None) -> Database:
    return Database(settings=settings)


__all__ = ["Database", "get_database"]
