"""
Database engine and session factory.

The engine is built from Settings by the application container, never at
import time, so tests can point the whole stack at a throwaway SQLite
database.

Transactions:
  Every write path opens `async with session.begin():` so the unit of work
  commits on clean exit and rolls back on any exception. The storage layer
  relies on this for per-batch atomicity.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docflow.core.config import Settings
from docflow.models.documents import Base

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def create_engine(settings: Settings) -> AsyncEngine:
    url = settings.database_url
    if url.startswith("sqlite"):
        # SQLite has no connection pool sizing
        return create_async_engine(url, echo=settings.db_echo_sql)

    return create_async_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,           # recycle connections every hour
        echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
    )


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create tables if missing (dev / tests; production uses migrations)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------

@asynccontextmanager
async def transaction(factory: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """One session, one transaction: commit on exit, roll back on error."""
    async with factory() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(engine: AsyncEngine) -> dict:
    """Ping the database; used by /ready endpoint."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
