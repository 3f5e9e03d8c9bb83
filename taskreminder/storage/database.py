"""Database engine and session management."""

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from taskreminder.core.config import get_settings
from taskreminder.storage.tables import Base

SessionFactory = async_sessionmaker[AsyncSession]

# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: SessionFactory | None = None


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; SQLite connections get foreign key enforcement.

    Args:
        url: SQLAlchemy async database URL
        echo: Echo SQL statements

    Returns:
        Configured engine
    """
    engine = create_async_engine(url, echo=echo, pool_pre_ping=not url.startswith("sqlite"))
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_database(create_tables: bool = True) -> None:
    """Initialize the global engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(settings.database_url, echo=settings.database_echo)
        _session_factory = create_session_factory(_engine)
        if create_tables:
            await create_schema(_engine)


async def close_database() -> None:
    """Dispose the global engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> SessionFactory:
    """Get the global session factory.

    Raises:
        RuntimeError: If the database is not initialized
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _session_factory
