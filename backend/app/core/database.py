"""
Database layer — async SQLAlchemy 2.0 engine and session factory.

Provides:
    • Engine / session factory builders (injected, no module-level engine)
    • Base model for ORM entities
    • Table creation and disposal helpers for process lifecycle

PostgreSQL via asyncpg in production; tests use sqlite+aiosqlite.

Usage:
    engine = build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)
    async with session_factory() as session:
        ...
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def build_engine(
    url: str,
    *,
    pool_size: int = 20,
    max_overflow: int = 10,
    echo: bool = False,
) -> AsyncEngine:
    """Create an async engine. Pool sizing is skipped for SQLite."""
    kwargs: Dict[str, Any] = {"echo": echo}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True)
    return create_async_engine(url, **kwargs)


# ── Session Factory ──
def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Lifecycle ──
async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Registers the ORM tables on Base.metadata
    from backend.app.storage import orm  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
