"""Postgres plumbing for the terminal job archive.

Redis holds every live job. Postgres only receives jobs that reached a
terminal status, so the archive is optional: with no ``database_url`` the
engine is never created and archive writes are skipped.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from vibeforge.core.config import get_settings

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for archive tables."""


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def archive_enabled() -> bool:
    return _session_factory is not None


async def init_db(url: str | None = None) -> bool:
    """Connect the archive database and create its tables.

    A failed connection leaves the archive disabled rather than half-initialized.

    Args:
        url: Database URL (defaults to ``settings.database_url``)

    Returns:
        True if the archive is enabled, False if no database URL is configured
    """
    global _engine, _session_factory

    if _engine is not None:
        return True

    settings = get_settings()
    url = url or settings.database_url
    if not url:
        logger.info("archive_disabled", reason="no database_url configured")
        return False

    engine = create_async_engine(url, echo=settings.debug, pool_pre_ping=True)

    # Registers generation_jobs on Base.metadata
    import vibeforge.db.models  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception:
        await engine.dispose()
        raise

    _engine = engine
    _session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    logger.info("archive_enabled", tables=sorted(Base.metadata.tables))
    return True


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def archive_session() -> AsyncIterator[AsyncSession]:
    """Yield a session inside a transaction that commits on clean exit.

    Raises:
        RuntimeError: If init_db() has not enabled the archive
    """
    if _session_factory is None:
        raise RuntimeError("Archive database not initialized. Call init_db() first.")

    async with _session_factory() as session:
        async with session.begin():
            yield session
