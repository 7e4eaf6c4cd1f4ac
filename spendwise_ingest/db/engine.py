"""Async SQLAlchemy engine and session factory."""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from spendwise_ingest.config import DatabaseConfig
from spendwise_ingest.db.models import Base

logger = structlog.get_logger()


def _make_engine(config: DatabaseConfig):
    kwargs: dict = {"echo": config.echo}
    if not config.url.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True)
    return create_async_engine(config.url, **kwargs)


def _make_session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class DatabaseEngine:
    """Holds the engine and its session factory.

    Created once at startup and shared by the ledger, the credential
    provider, the expense store and (optionally) the run registry.
    """

    def __init__(self, config: DatabaseConfig) -> None:
        self.engine = _make_engine(config)
        self.session = _make_session_factory(self.engine)

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_tables_ready")

    async def close(self) -> None:
        await self.engine.dispose()
