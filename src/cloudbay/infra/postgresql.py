"""Database engine and session management."""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from cloudbay.app.config import get_settings
from cloudbay.core import models  # noqa: F401 - registers tables on SQLModel.metadata
from cloudbay.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_kwargs(url: str) -> dict:
    settings = get_settings()
    kwargs: dict = {"echo": settings.database.echo}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            pool_recycle=3600,
            pool_pre_ping=True,
        )
    return kwargs


async def init_db(url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """Create the engine and session factory, then verify connectivity."""
    global _engine, _session_factory

    settings = get_settings()
    db_url = url or str(settings.database.url)

    _engine = create_async_engine(db_url, **_engine_kwargs(db_url))
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info(
            "Database connected",
            extra={"event": LogEvent.DB_CONNECTED, "dialect": _engine.dialect.name},
        )
    except Exception as e:
        logger.error(
            "Database connection failed",
            extra={
                "event": LogEvent.DB_ERROR,
                "error_type": type(e).__name__,
                "error": str(e),
            },
        )
        raise

    return _session_factory


async def create_schema() -> None:
    """Create tables for local development and tests.

    Production schemas are managed outside this service.
    """
    async with get_engine().begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized")
    return _engine

