"""
Database layer — async SQLAlchemy 2.0 (asyncpg in production).

Provides:
    • Async engine and session factory (created lazily from settings)
    • Base model for ORM entities
    • Table creation / engine disposal for the app lifespan

Usage:
    from spacewx.core.database import get_session_factory, init_db

    await init_db()
    async with get_session_factory()() as session:
        ...
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from spacewx.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def build_engine(url: Optional[str] = None) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    url = url or settings.DATABASE_URL
    kwargs = {"echo": settings.DATABASE_ECHO}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
        kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ── Lazy process-wide engine ──
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


# ── Lifecycle ──
async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Register ORM tables on Base.metadata
    from spacewx.storage import sql  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db() -> None:
    """Dispose engine connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")
