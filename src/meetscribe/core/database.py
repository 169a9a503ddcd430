"""Async SQLAlchemy engine and session factories.

Provides:
- Base: Declarative base for pipeline tables
- get_engine(): Lazily created engine singleton for DATABASE_URL
- session_factory_for(): Session factory callable bound to a given engine
- init_db()/close_db(): Table creation and engine disposal
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.meetscribe.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def create_engine_for(url: str) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(url, pool_size=20, max_overflow=10, echo=False)


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        _engine = create_engine_for(get_settings().DATABASE_URL)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all pipeline models."""

    metadata = MetaData()


# ── Session Factories ───────────────────────────────────────────────────────


def session_factory_for(
    engine: AsyncEngine,
) -> Callable[[], AsyncGenerator[AsyncSession, None]]:
    """Build a session factory callable for the given engine."""

    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _factory


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create pipeline tables if they don't exist."""
    # Registers the models on Base.metadata
    from src.meetscribe.pipeline import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
