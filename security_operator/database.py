"""
Database Configuration Module - Async Report Store Backend
==========================================================
Async SQLAlchemy engine and session factory for the report store.

PostgreSQL (asyncpg) in production; the same models run on SQLite
(aiosqlite) so the store can be exercised in tests without a server.
"""

import json
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import AsyncAdaptedQueuePool

from security_operator.config import get_settings


# =============================================================================
# BASE MODEL - All ORM models inherit from this
# =============================================================================

class Base(DeclarativeBase):
    """Declarative base shared by the report store tables."""
    pass


# =============================================================================
# ENGINE FACTORY
# =============================================================================

def create_db_engine(
    database_url: str | None = None,
    echo: bool | None = None,
    pool_class: type | None = None,
) -> AsyncEngine:
    """
    Create an async engine.

    Args:
        database_url: Override the configured connection string (tests)
        echo: Override SQL echo setting
        pool_class: Override pool class (use NullPool for testing)

    Pool sizing only applies to server databases; SQLite gets the
    dialect's default pool unless one is passed.
    """
    settings = get_settings()
    url = database_url or settings.database_url
    sql_echo = echo if echo is not None else settings.db_echo_sql

    kwargs: dict = {
        "echo": sql_echo,
        "json_serializer": lambda obj: json.dumps(obj, default=str),
        "json_deserializer": json.loads,
    }
    if pool_class is not None:
        kwargs["poolclass"] = pool_class
    elif not url.startswith("sqlite"):
        kwargs.update(
            poolclass=AsyncAdaptedQueuePool,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
            pool_recycle=1800,
        )

    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory for an engine.

    - expire_on_commit=False: rows stay readable after the session closes
    - autoflush=False: explicit flush control
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# =============================================================================
# PROCESS-WIDE ENGINE
# =============================================================================

# Global engine instance - initialized lazily
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the global engine instance."""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the global async session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = create_session_factory(get_engine())
    return _async_session_factory


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for database sessions.

    Commits on success, rolls back on any exception and re-raises it.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions."""
    async with get_db_session() as session:
        yield session


# =============================================================================
# DATABASE LIFECYCLE
# =============================================================================

async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Create tables if they don't exist.

    Reports are derived data, so create_all is sufficient; there is no
    migration history to preserve.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose the global engine and close all connections."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None


async def health_check(engine: AsyncEngine | None = None) -> dict:
    """
    Database health check for readiness probes.

    Returns:
        dict with connection status
    """
    engine = engine or get_engine()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {
            "status": "unhealthy",
            "database": "disconnected",
            "error": str(e),
        }
