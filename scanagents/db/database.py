"""
Engine and session handling for the agent store.

PostgreSQL (asyncpg) in production. A ``sqlite+aiosqlite`` URL works for
local runs; pool sizing only applies to server databases.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..core.config import Settings, get_settings
from .models import Base


def _build_engine(settings: Settings) -> AsyncEngine:
    options: dict[str, Any] = {"echo": False}
    if make_url(settings.database_url).get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_pool_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,
        )
    return create_async_engine(settings.database_url, **options)


engine = _build_engine(get_settings())

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """One session, committed on success and rolled back on error"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session for route dependencies"""
    async with session_scope() as session:
        yield session


async def init_db() -> None:
    """Create missing tables (development only; deployments run Alembic)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
