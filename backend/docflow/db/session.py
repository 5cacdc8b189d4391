"""
Database session management.

Flow:
  1. A worker task builds one engine and session factory (build_engine /
     build_session_factory) and hands the factory to SqlDocumentStore.
  2. Each store call opens a transaction via session_scope().
  3. On exit the transaction commits (or rolls back on error) and the
     connection is returned to the pool.

SqlDocumentStore takes the session factory rather than a session, so each
store call is its own short transaction and a long pipeline run never holds
a connection across stages.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docflow.core.config import settings
from docflow.models.documents import Base

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def build_engine(database_url: str | None = None) -> AsyncEngine:
    url = database_url or settings.database_url
    kwargs: dict = {"echo": settings.db_echo_sql}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,          # detect stale connections before use
            pool_recycle=3600,           # recycle connections every hour
        )
    return create_async_engine(url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------

@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Transactional session; commits on clean exit, rolls back on error."""
    async with factory() as session:
        async with session.begin():
            yield session


async def create_schema(bind: AsyncEngine) -> None:
    """Create all tables on an empty database."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")
