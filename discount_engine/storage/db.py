# ==== DATABASE CONNECTION AND SESSION MANAGEMENT ==== #

"""
Database connection and session management for the discount engine.

This module provides async SQLAlchemy connectivity, the declarative base,
the session factory injected into the discount repository, and schema
creation for local runs and tests.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
    AsyncEngine
)
from sqlalchemy.orm import declarative_base

from discount_engine.settings import settings
from discount_engine.observability.metrics import db_connections_active


# ==== SQLALCHEMY CONFIGURATION ==== #

# SQLAlchemy base for model definitions
Base = declarative_base()

# Global engine and session factory instances
engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


# ==== DATABASE INITIALIZATION ==== #

def _normalize_url(db_url: str) -> str:
    """Force the asyncpg driver on plain PostgreSQL URLs."""
    if db_url.startswith("postgresql://"):
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif db_url.startswith("postgresql+psycopg://"):
        db_url = db_url.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)

    # asyncpg spells the SSL flag differently
    if "sslmode=require" in db_url:
        db_url = db_url.replace("sslmode=require", "ssl=require")

    return db_url


def init_database(database_url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """
    Initialize database engine and session factory.

    PostgreSQL runs at READ COMMITTED: the conditional usage increment
    re-checks its predicate against the committed row after a lock wait,
    which is all the core transaction relies on.

    Args:
        database_url (str | None): Override for settings.DATABASE_URL

    Returns:
        async_sessionmaker[AsyncSession]: Session factory bound to the engine
    """
    global engine, SessionLocal

    if engine is not None and SessionLocal is not None:
        return SessionLocal

    db_url = _normalize_url(database_url or settings.DATABASE_URL)

    engine_kwargs = {"echo": False}
    if db_url.startswith("postgresql"):
        engine_kwargs["isolation_level"] = "READ_COMMITTED"
        engine_kwargs["connect_args"] = {
            "server_settings": {
                "application_name": settings.SERVICE_NAME,
                "timezone": "UTC"
            }
        }

    engine = create_async_engine(db_url, **engine_kwargs)

    SessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )
    return SessionLocal


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory, initializing the engine on first use."""
    if SessionLocal is None:
        return init_database()
    return SessionLocal


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session with automatic cleanup.

    Yields:
        AsyncSession: Database session
    """
    session_factory = get_session_factory()

    async with session_factory() as session:
        try:
            db_connections_active.inc()
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            db_connections_active.dec()


async def create_schema() -> None:
    """Create all tables known to the declarative base."""
    # Register models on Base.metadata
    from discount_engine.storage import models  # noqa: F401

    get_session_factory()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database() -> bool:
    """Run a trivial query; used by the readiness probe."""
    from sqlalchemy import text

    async with get_session() as session:
        await session.execute(text("SELECT 1"))
    return True


async def close_database() -> None:
    """Close database connections on shutdown."""
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
        engine = None
        SessionLocal = None
