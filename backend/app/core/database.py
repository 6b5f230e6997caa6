"""
Database layer — async SQLAlchemy 2.0 (asyncpg in production, aiosqlite locally).

Provides:
    • Engine and session-factory builders (explicitly constructed, no
      module-level engine; callers own the lifecycle)
    • Declarative base for ORM entities
    • Table creation for dev/test

Usage:
    from backend.app.core.database import build_engine, build_session_factory

    engine = build_engine(settings.DATABASE_URL)
    sessions = build_session_factory(engine)
    async with sessions() as session:
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

from backend.app.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def build_engine(url: Optional[str] = None, cfg: Optional[Settings] = None) -> AsyncEngine:
    """Create an async engine; pool options only apply to server databases."""
    cfg = cfg or default_settings
    url = url or cfg.DATABASE_URL
    kwargs = {"echo": cfg.DATABASE_ECHO, "future": True}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=cfg.DATABASE_POOL_SIZE,
            max_overflow=cfg.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
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
    # Importing registers the ORM tables on Base.metadata
    from backend.app.alerts import sql_store  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
