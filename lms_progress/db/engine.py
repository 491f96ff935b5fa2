"""Async SQLAlchemy engine for the Postgres row store.

DATABASE_URL set    engine + async_session_factory; PgRowStore opens one
                    short session per call through the factory.
DATABASE_URL unset  both are None and every store runs in memory.

Statements are bounded by REMOTE_CALL_TIMEOUT_MS at the driver too, so a
wedged connection surfaces as a transient error instead of holding a
learner's completion forever.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from lms_progress.core.config import SETTINGS

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _build_engine(url: str) -> AsyncEngine:
    timeout_s = SETTINGS.remote_call_timeout_ms / 1000
    return create_async_engine(
        url,
        echo=SETTINGS.is_dev,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args={"timeout": timeout_s, "command_timeout": timeout_s},
    )


engine: AsyncEngine | None = (
    _build_engine(SETTINGS.database_url) if SETTINGS.database_url else None
)
async_session_factory: async_sessionmaker[AsyncSession] | None = (
    async_sessionmaker(engine, expire_on_commit=False) if engine is not None else None
)


@asynccontextmanager
async def lifespan_db():
    """Check the database on startup and dispose the pool on shutdown.

    A failed check is logged, not raised: completions queue until the
    database is back and /ready reports 503 meanwhile.
    """
    if engine is None:
        logger.info("DATABASE_URL not set, progress rows are kept in memory")
        yield
        return

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database reachable: %s", engine.url.render_as_string(hide_password=True))
    except (SQLAlchemyError, OSError):
        logger.exception("Database unreachable on startup")

    try:
        yield
    finally:
        await engine.dispose()
        logger.info("Database pool disposed")
