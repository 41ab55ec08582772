from __future__ import annotations

from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from apihub.config import Settings, get_settings
from apihub.db.models import Base

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: Settings | None = None) -> None:
    """Initialise the process-wide SQLAlchemy engine with connection pooling."""

    global _engine, _session_factory

    cfg = settings or get_settings()
    if _engine is not None:
        return

    if cfg.database_url.startswith("sqlite"):
        _engine = create_async_engine(cfg.database_url, echo=cfg.debug)
    else:
        _engine = create_async_engine(
            cfg.database_url,
            echo=cfg.debug,
            pool_size=cfg.db_pool_size,
            max_overflow=cfg.db_max_overflow,
            pool_timeout=cfg.db_pool_timeout,
            pool_recycle=cfg.db_pool_recycle,
            pool_pre_ping=True,
        )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_engine()
        assert _session_factory is not None
    return _session_factory


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield an async database session for FastAPI dependency."""

    async with get_session_factory()() as session:
        yield session


async def create_schema() -> None:
    """Create all tables on the configured engine."""

    get_session_factory()
    assert _engine is not None
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Release pooled connections on graceful shutdown."""

    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
