"""
Database engine and session management (SQLAlchemy 2.0 async).

Request handlers get a session from get_db_session(); background workers
open their own through get_session_factory(), one session per task.

Transaction ownership:
- Pipeline services only flush(); whoever opened the session commits
- get_db_session() commits when the request succeeds and rolls back otherwise
- The fine-tune job processor is the exception and commits per state
  transition (see staytune.training.jobs)

Engines:
- PostgreSQL (asyncpg) in every deployed environment, with a bounded pool
  and a per-statement timeout
- SQLite (aiosqlite) for tests and local runs; an in-memory database is
  pinned to a single connection so every session sees the same data
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import structlog
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool, StaticPool

from staytune.config import Settings, get_settings

log = structlog.get_logger(__name__)

# JSONB on PostgreSQL, plain JSON on SQLite
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base shared by every pipeline table (Alembic reads its metadata)."""


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for ``settings.database_url``."""
    url = settings.database_url
    kwargs: dict[str, Any] = {"echo": settings.db_echo_sql}

    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        kwargs["poolclass"] = StaticPool if ":memory:" in url else NullPool
    else:
        if url.startswith("postgresql+asyncpg"):
            kwargs["connect_args"] = {"command_timeout": settings.db_command_timeout_seconds}
        kwargs.update(
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            pool_recycle=300,  # seconds
            pool_timeout=30,
        )
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Services read job and example fields after commit
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# Module-level singletons, initialized in lifespan
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db(settings: Settings | None = None) -> None:
    """Create the engine and session factory; called once at startup."""
    global _engine, _session_factory
    cfg = settings or get_settings()
    _engine = build_engine(cfg)
    _session_factory = build_session_factory(_engine)
    log.info("database.initialized", url=cfg.database_url.split("@")[-1])


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        log.info("database.closed")
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed on success."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
