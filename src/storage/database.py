"""
Database connection and session management.

This module provides:
- Async SQLAlchemy engine configuration
- Session factory shared by the event store
- Schema helpers for local runs and tests
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from src.core.config import settings

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


# =============================================================================
# Engine Configuration
# =============================================================================


def create_engine() -> AsyncEngine:
    """
    Create async SQLAlchemy engine.

    Uses connection pooling in production, NullPool in development.
    """
    if settings.is_development:
        return create_async_engine(
            settings.DATABASE_URL,
            echo=settings.SQL_ECHO,
            poolclass=NullPool,
            pool_pre_ping=True,
        )
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.SQL_ECHO,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=settings.DATABASE_POOL_TIMEOUT_SECONDS,
        pool_pre_ping=True,
    )


# Create engine instance
engine = create_engine()

# Create session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# =============================================================================
# Utility Functions
# =============================================================================


async def init_db() -> None:
    """
    Initialize database tables.

    Note: In production, use Alembic migrations instead.
    """
    from src.storage.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
