"""
Database engine, session factory and transaction scope.

Stores never share a session: each operation opens one from the factory and
finishes it before returning, so no transaction is held while the gateway is
being called.
"""
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from reconciler.config import Settings
from reconciler.database.models import Base

logger = structlog.get_logger(__name__)


def engine_options(settings: Settings) -> Dict[str, Any]:
    """
    Engine keyword arguments for the configured backend.

    In-memory SQLite needs a single shared connection or every session would
    see its own empty database; file SQLite uses the driver defaults; server
    databases get the sized, pre-pinged pool.
    """
    url = make_url(settings.database_url)
    options: Dict[str, Any] = {"echo": settings.database_echo}

    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            options.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
        return options

    options.update(
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
    )
    return options


def build_engine(settings: Settings) -> AsyncEngine:
    """Engine for the configured database; connections open on first use."""
    engine = create_async_engine(settings.database_url, **engine_options(settings))
    logger.info("database_engine_created", backend=make_url(settings.database_url).drivername)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """
    One unit of work: commit on success, roll back on any error.

    Example:
        async with session_scope(factory) as session:
            session.add(record)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """Create missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized")


async def close_db(engine: AsyncEngine) -> None:
    """Release every pooled connection."""
    await engine.dispose()
    logger.info("database_connections_closed")
