from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .settings import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """Base declarative class for SQLAlchemy models."""


def build_engine(database_url: str, **engine_kwargs) -> AsyncEngine:
    engine_kwargs.setdefault("echo", False)
    return create_async_engine(database_url, **engine_kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by requests, scheduler ticks and tests alike."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.async_database_url, pool_pre_ping=True)
AsyncSessionLocal = build_session_factory(engine)


async def get_session() -> AsyncSession:
    """FastAPI dependency: one session per request."""
    async with AsyncSessionLocal() as session:
        yield session
