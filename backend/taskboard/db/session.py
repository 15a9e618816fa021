"""Async engine, request sessions and schema bootstrap for the board store."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Any

from alembic import command
from alembic.config import Config
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard import models as _models
from taskboard.core.config import settings
from taskboard.core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

# Every table must be on SQLModel.metadata before create_all or autogenerate.
_MODEL_REGISTRY = _models

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"
_DRIVERS = {"postgresql": "postgresql+psycopg", "sqlite": "sqlite+aiosqlite"}

logger = get_logger(__name__)


def _normalize_database_url(database_url: str) -> str:
    """Pin bare `postgresql://` and `sqlite://` URLs to their async drivers."""
    scheme, sep, rest = database_url.partition("://")
    if not sep:
        return database_url
    return f"{_DRIVERS.get(scheme, scheme)}://{rest}"


def _engine_options(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        if ":memory:" in url or url.endswith("://"):
            # One shared connection, otherwise each session sees an empty database.
            return {"poolclass": StaticPool}
        return {}
    return {"pool_pre_ping": True}


def build_engine(database_url: str | None = None) -> AsyncEngine:
    url = _normalize_database_url(database_url or settings.database_url)
    return create_async_engine(url, **_engine_options(url))


async_engine = build_engine()
async_session_maker = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def run_migrations() -> None:
    """Upgrade the schema to the latest task board revision."""
    alembic_cfg = Config(str(ALEMBIC_INI))
    # Keep the application's logging configuration.
    alembic_cfg.attributes["configure_logger"] = False
    logger.info("db.migrations.started", extra={"config": str(ALEMBIC_INI)})
    command.upgrade(alembic_cfg, "head")
    logger.info("db.migrations.completed")


async def init_db() -> None:
    """Create or migrate the board schema before serving requests."""
    if settings.db_auto_migrate:
        await asyncio.to_thread(run_migrations)
        return
    async with async_engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("db.schema.created", extra={"tables": sorted(SQLModel.metadata.tables)})


async def dispose_engine() -> None:
    await async_engine.dispose()


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request session; anything left uncommitted is rolled back."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            if session.in_transaction():
                try:
                    await session.rollback()
                except SQLAlchemyError:
                    logger.exception("db.session.rollback_failed")
