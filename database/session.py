"""
Async SQLAlchemy session factory for PostgreSQL.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config.settings import Settings


def build_engine(cfg: Settings) -> AsyncEngine:
    """Pool sized by ``db_max_connections``; waiting for a slot gives up after the acquire timeout."""
    return create_async_engine(
        cfg.database_url,
        echo=False,
        pool_size=cfg.db_max_connections,
        max_overflow=0,
        pool_timeout=cfg.db_acquire_timeout_ms / 1000,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
