"""Engine and session handling for the local ledger database."""

import os
import logging
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from . import models

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./reconciliation.db"

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_database_url() -> str:
    """Read ``DATABASE_URL``, normalizing Postgres URLs to the asyncpg driver."""
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        return DEFAULT_DATABASE_URL
    for prefix in ("postgresql://", "postgres://"):
        if db_url.startswith(prefix):
            return db_url.replace(prefix, "postgresql+asyncpg://", 1)
    return db_url


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    SQLite engines share a single connection so in-memory databases survive
    across sessions.

    Args:
        database_url: Connection URL. Defaults to ``get_database_url()``.
        echo: Log every SQL statement.
        pool_size: Pooled connections (server databases only).
        max_overflow: Extra connections beyond ``pool_size``.

    Returns:
        AsyncEngine instance.
    """
    url = database_url or get_database_url()

    if url.startswith("sqlite"):
        return sa_create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return sa_create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )


def _make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_async_session_factory(
    engine: Optional[AsyncEngine] = None,
) -> async_sessionmaker[AsyncSession]:
    """Return a session factory.

    Args:
        engine: Bind a new factory to this engine. When omitted the factory
            created by ``init_db()`` is returned.

    Raises:
        RuntimeError: If no engine is given and ``init_db()`` has not run.
    """
    if engine is not None:
        return _make_session_factory(engine)
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)


async def init_db(
    database_url: Optional[str] = None,
    echo: bool = False,
    create_schema: bool = True,
) -> AsyncEngine:
    """Initialize the module-level engine and session factory.

    Args:
        database_url: Connection URL. Defaults to ``get_database_url()``.
        echo: Log every SQL statement.
        create_schema: Create missing tables. Production deployments run the
            Alembic migrations instead.

    Returns:
        The initialized engine.
    """
    global _engine, _session_factory

    logger.info("Initializing database connection...")
    _engine = create_async_engine(database_url, echo=echo)
    _session_factory = _make_session_factory(_engine)

    if create_schema:
        await create_tables(_engine)
        logger.info("Database tables created")

    return _engine


async def close_db() -> None:
    """Dispose of the module-level engine."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed")


@asynccontextmanager
async def session_scope(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commit on success, roll back on error.

    Example:
        async with session_scope() as session:
            rows = await TransactionRepository(session).list_by_channel(...)
    """
    factory = session_factory or get_async_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a transactional session."""
    async with session_scope() as session:
        yield session
