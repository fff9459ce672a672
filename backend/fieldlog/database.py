"""
FieldLog Backend: Database Engine Management
==============================================

What:  Async SQLAlchemy engine, session factory and declarative base.
How:   The application factory builds one engine per process from Settings and
       hands the session factory to the version store.
Who:   Used by main.py (lifespan), the SQL version store and the tests.

Connection Pooling Strategy:
    Server databases (PostgreSQL via asyncpg) get a bounded pool:
    pool_size + max_overflow connections, pre-ping, hourly recycle.
    SQLite (aiosqlite) uses SQLAlchemy's default pool for its driver; the
    pool arguments are not accepted there and are skipped.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from fieldlog.config import Settings


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Shares one metadata object, which alembic and `create_tables` read.
    """
    pass


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Build the async engine for `settings.database_url`.

    Echoes SQL when the log level is DEBUG.
    """
    kwargs = {"echo": settings.log_level == "DEBUG"}
    if not settings.database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=3600,
        )
    return create_async_engine(settings.database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: rows stay readable after the transaction closes
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create every table registered on `Base` that does not exist yet."""
    # Import so the models register with Base.metadata
    from fieldlog.models import version  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine(engine: AsyncEngine) -> None:
    """
    What:  Gracefully closes all connections in the pool.
    When:  Called during application shutdown (lifespan handler).
    """
    await engine.dispose()
