from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from . import settings

_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Engine for settings.DATABASE_URL, created on first use."""
    global _engine, _sessionmaker
    if _engine is None:
        _engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)
        _sessionmaker = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    return _engine


def SessionLocal() -> AsyncSession:
    get_engine()
    return _sessionmaker()


def reset_engine() -> None:
    """Forget the engine so the next use picks up changed settings."""
    global _engine, _sessionmaker
    _engine = None
    _sessionmaker = None
