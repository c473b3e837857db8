# =============================================================================
# Database Engine — Async SQLAlchemy for the pgvector Store
# =============================================================================
#
# PgVectorStore owns its engine; nothing here is a module-level singleton,
# so two stores pointed at different databases can coexist in one process.
#
# Key parameters:
# - echo=settings.debug: log every SQL statement during development
# - pool_size=5 / max_overflow=10: modest pool, tune per deployment
# - expire_on_commit=False: objects stay readable after commit in async code
# =============================================================================

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ragindex.config import Settings, get_settings


def create_engine_from_settings(settings: Settings | None = None) -> AsyncEngine:
    """Create an async engine for `settings.database_url` (asyncpg driver)."""
    cfg = settings or get_settings()
    return create_async_engine(
        cfg.database_url,
        echo=cfg.debug,
        pool_size=5,
        max_overflow=10,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def ensure_vector_extension(engine: AsyncEngine) -> None:
    """Enable pgvector in the target database (no-op if already enabled)."""
    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
