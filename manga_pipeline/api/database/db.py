"""PostgreSQL connection management.

SQLAlchemy (async) owns the schema: ``init_db`` creates the entities table
and its index declarations from models.py. Runtime reads and writes go
through an asyncpg pool (see store.py).
"""

from typing import Optional

import asyncpg
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from ..config import DATABASE_URL


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""

    pass


# Create async engine (only if DATABASE_URL is configured)
engine: Optional[AsyncEngine] = None

if DATABASE_URL:
    engine = create_async_engine(
        DATABASE_URL,
        echo=False,  # Set to True for SQL debugging
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
    )


def _check_configured():
    """Raise an error if the database is not configured."""
    if engine is None:
        raise RuntimeError(
            "Database not configured. Set DATABASE_URL environment variable "
            "to a PostgreSQL connection string."
        )


def asyncpg_dsn(url: str = "") -> str:
    """Convert a SQLAlchemy-style URL to asyncpg format."""
    return (url or DATABASE_URL).replace("+asyncpg", "")


async def init_db() -> None:
    """Initialize database - create all tables."""
    _check_configured()
    # Import models so they register on Base.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def create_pg_pool(url: str = "", min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    """Create the asyncpg pool used by PostgresEntityStore."""
    return await asyncpg.create_pool(asyncpg_dsn(url), min_size=min_size, max_size=max_size)
