"""
Engine and session factory for the SQL document store.

``init_db`` runs once at startup when ``settings.store_backend`` is
``"postgres"``; ``SqlDocumentStore`` then opens one short-lived session per
read or write through ``get_session_factory()``.
"""

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from config import Settings

logger = logging.getLogger(__name__)

# Set by init_db, cleared by close_db
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(settings: Settings) -> AsyncEngine:
    """Pooled asyncpg engine for ``settings.database_url``."""
    return create_async_engine(
        settings.database_url,
        echo=False,
        pool_size=settings.postgres_pool_size,
        max_overflow=settings.postgres_max_overflow,
        pool_timeout=settings.postgres_pool_timeout,
        pool_pre_ping=True,  # Drop connections the server closed
        pool_recycle=3600,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory over ``engine``.

    Rows stay readable after commit; the store copies what it needs out of
    them before the session closes.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def init_db(settings: Settings) -> AsyncEngine:
    """
    Create the process-wide engine and session factory.

    Args:
        settings: Application settings with the PostgreSQL connection options

    Returns:
        AsyncEngine: The new engine
    """
    global _engine, _session_factory

    logger.info(
        "Connecting to document database",
        extra={
            "host": settings.postgres_host,
            "port": settings.postgres_port,
            "database": settings.postgres_db,
            "pool_size": settings.postgres_pool_size,
        },
    )
    _engine = build_engine(settings)
    _session_factory = make_session_factory(_engine)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Session factory created by ``init_db``.

    Raises:
        RuntimeError: ``init_db`` has not run
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() in application startup.")
    return _session_factory


async def close_db() -> None:
    """Dispose of the engine's pool at shutdown."""
    global _engine, _session_factory

    if _engine is None:
        return
    logger.info("Closing document database connections")
    await _engine.dispose()
    _engine = None
    _session_factory = None
