from __future__ import annotations

import asyncio
import contextlib
import socket
from typing import Protocol
from uuid import uuid4

import structlog
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from apihub.config import Settings, get_settings
from apihub.core.errors import ApihubError, NotFoundError, ValidationError
from apihub.db.session import get_session_factory
from apihub.domain.models import Build, BuildResult, BuildStatus
from apihub.logging import bind_build_context
from apihub.publish.transaction import PublishTransaction
from apihub.queue.models import BuildTask
from apihub.queue.repository import SOURCES_NOT_FOUND_DETAILS, BuildQueue

logger = structlog.get_logger()


class BuildParser(Protocol):
    """Turns a leased build into its result.

    Publish and changelog builds return a ``BuildResult``; export-style
    builds may return the serialized output directly.
    """

    async def __call__(self, task: BuildTask) -> BuildResult | bytes: ...


def default_builder_id() -> str:
    return f"{socket.gethostname()}-{uuid4().hex[:8]}"


class BuildWorker:
    """Polls the queue, runs the parser and commits what it produces."""

    def __init__(
        self,
        parser: BuildParser,
        *,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        builder_id: str | None = None,
    ) -> None:
        self._parser = parser
        self._settings = settings or get_settings()
        self._session_factory = session_factory or get_session_factory()
        self.builder_id = builder_id or default_builder_id()
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    async def run(self) -> None:
        """Poll until ``stop()``, backing off exponentially while the queue is empty."""
        poll_interval = self._settings.worker_poll_interval_sec
        delay = poll_interval
        logger.info("worker_started", builder_id=self.builder_id)
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except Exception as exc:
                logger.error(
                    "worker_iteration_failed",
                    builder_id=self.builder_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                processed = False
            if processed:
                delay = poll_interval
                continue
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            delay = min(delay * 2, self._settings.worker_max_backoff_sec)
        logger.info("worker_stopped", builder_id=self.builder_id)

    async def run_once(self) -> bool:
        """Lease and process at most one build; returns whether one was leased."""
        async with self._session_factory() as session:
            queue = BuildQueue.from_settings(session, self._settings)
            build = await self._take(queue)
            if build is None:
                return False
            bind_build_context(build.build_id, builder_id=self.builder_id)
            await self._process(session, queue, build)
            return True

    @retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def _take(self, queue: BuildQueue) -> Build | None:
        return await queue.take_free_build(self.builder_id)

    async def _process(self, session: AsyncSession, queue: BuildQueue, build: Build) -> None:
        log = logger.bind(build_id=build.build_id, builder_id=self.builder_id)
        try:
            source = await queue.get_source(build.build_id)
        except NotFoundError:
            await queue.fail(build.build_id, SOURCES_NOT_FOUND_DETAILS)
            return
        except ValidationError as exc:
            await queue.fail(build.build_id, exc.rendered_message)
            return

        task = BuildTask.from_lease(build, source)
        heartbeat = asyncio.create_task(self._heartbeat(build.build_id))
        try:
            output = await self._parser(task)
        except Exception as exc:
            log.warning("build_parse_failed", error=str(exc), error_type=type(exc).__name__)
            await self._report_failure(queue, build.build_id, str(exc) or type(exc).__name__)
            return
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

        payload = output if isinstance(output, bytes) else output.model_dump_json().encode()
        try:
            await PublishTransaction(session, self._settings).commit_result(
                build.build_id, payload, builder_id=self.builder_id
            )
        except ApihubError as exc:
            if exc.code in ("BuildAlreadyFinished", "BuildNotOwned"):
                log.warning("build_lease_lost", code=exc.code)
                return
            await self._report_failure(queue, build.build_id, str(exc))
        except Exception as exc:
            await self._report_failure(queue, build.build_id, str(exc) or type(exc).__name__)
        else:
            log.info("build_processed", restart_count=build.restart_count)

    async def _report_failure(self, queue: BuildQueue, build_id: str, details: str) -> None:
        try:
            await queue.update_status(
                build_id, BuildStatus.error, details, builder_id=self.builder_id
            )
        except ApihubError as exc:
            logger.warning(
                "build_status_update_rejected", build_id=build_id, code=exc.code, error=str(exc)
            )

    async def _heartbeat(self, build_id: str) -> None:
        interval = self._settings.worker_heartbeat_interval_sec
        while True:
            await asyncio.sleep(interval)
            try:
                async with self._session_factory() as session:
                    await BuildQueue.from_settings(session, self._settings).heartbeat(
                        build_id, self.builder_id
                    )
            except ApihubError as exc:
                logger.warning(
                    "worker_heartbeat_failed", build_id=build_id, code=exc.code, error=str(exc)
                )
                return
            except Exception as exc:
                logger.warning(
                    "worker_heartbeat_failed",
                    build_id=build_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            logger.debug("worker_heartbeat", build_id=build_id)
