"""Root test configuration."""

import logging

import pytest
import pytest_asyncio
import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from apihub.config import Settings
from apihub.db.models import Base
from apihub.domain.models import PackageKind
from apihub.packages.store import PackageStore


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'apihub.db'}",
        redis_url="redis://localhost:6379/15",
        build_keepalive_timeout_sec=600,
        build_restart_limit=2,
        worker_poll_interval_sec=0.01,
        worker_max_backoff_sec=0.05,
        worker_heartbeat_interval_sec=60.0,
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def package(session):
    """The ``acme.svc`` package under the ``acme`` workspace."""
    store = PackageStore(session)
    await store.create_package("acme", PackageKind.workspace, "Acme")
    return await store.create_package("acme.svc", PackageKind.package, "Service")
