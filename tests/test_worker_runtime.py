import asyncio

import pytest
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError

from apihub.db import models as db_models
from apihub.domain.models import BuildStatus, BuildSubmission
from apihub.queue.models import BuildTask
from apihub.queue.repository import SOURCES_NOT_FOUND_DETAILS, BuildQueue
from apihub.versions.store import VersionStore
from apihub.workers.runtime import BuildWorker

from factories import PACKAGE_ID, VERSION, make_config, make_result


class RecordingParser:
    """Builder stand-in that records the tasks it receives."""

    def __init__(self, outcome=None, error: Exception | None = None):
        self.outcome = outcome
        self.error = error
        self.tasks: list[BuildTask] = []

    async def __call__(self, task: BuildTask):
        self.tasks.append(task)
        if self.error is not None:
            raise self.error
        return self.outcome if self.outcome is not None else make_result(task.package_id, task.version)


async def _submit(session, **config_overrides) -> str:
    return await BuildQueue(session).submit(
        BuildSubmission(
            package_id=PACKAGE_ID,
            config=make_config(**config_overrides),
            source=b"PK\x03\x04",
        )
    )


def _worker(parser, settings, session_factory) -> BuildWorker:
    return BuildWorker(
        parser, settings=settings, session_factory=session_factory, builder_id="worker-1"
    )


@pytest.mark.asyncio
async def test_run_once_publishes_parser_result(session, session_factory, settings, package):
    build_id = await _submit(session)
    parser = RecordingParser()

    assert await _worker(parser, settings, session_factory).run_once() is True

    assert [task.build_id for task in parser.tasks] == [build_id]
    assert parser.tasks[0].source == b"PK\x03\x04"
    assert parser.tasks[0].build_config.version == VERSION
    build = await BuildQueue(session).get_build(build_id)
    assert build.status == BuildStatus.complete
    async with session_factory() as fresh:
        revision = await VersionStore(fresh).resolve_revision(PACKAGE_ID, VERSION)
    assert revision.revision == 1


@pytest.mark.asyncio
async def test_run_once_on_empty_queue(settings, session_factory):
    parser = RecordingParser()

    assert await _worker(parser, settings, session_factory).run_once() is False
    assert parser.tasks == []


@pytest.mark.asyncio
async def test_parser_failure_releases_lease(session, session_factory, settings, package):
    build_id = await _submit(session)
    parser = RecordingParser(error=RuntimeError("parser crashed"))

    await _worker(parser, settings, session_factory).run_once()

    build = await BuildQueue(session).get_build(build_id)
    assert build.status == BuildStatus.running
    assert build.builder_id is None
    assert build.details == "parser crashed"


@pytest.mark.asyncio
async def test_invalid_result_is_reported_as_failure(session, session_factory, settings, package):
    build_id = await _submit(session)
    parser = RecordingParser(outcome=make_result(version="9.9"))

    await _worker(parser, settings, session_factory).run_once()

    build = await BuildQueue(session).get_build(build_id)
    assert build.status == BuildStatus.running
    assert build.builder_id is None
    assert build.details


@pytest.mark.asyncio
async def test_missing_sources_fail_the_build(session, session_factory, settings):
    build_id = await _submit(session)
    await session.execute(
        delete(db_models.BuildSourceRow).where(db_models.BuildSourceRow.build_id == build_id)
    )
    await session.commit()
    parser = RecordingParser()

    await _worker(parser, settings, session_factory).run_once()

    build = await BuildQueue(session).get_build(build_id)
    assert build.status == BuildStatus.error
    assert build.details == SOURCES_NOT_FOUND_DETAILS
    assert parser.tasks == []


@pytest.mark.asyncio
async def test_run_until_stopped(session, session_factory, settings, package):
    build_id = await _submit(session)
    worker: BuildWorker

    class StoppingParser(RecordingParser):
        async def __call__(self, task):
            result = await super().__call__(task)
            worker.stop()
            return result

    parser = StoppingParser()
    worker = _worker(parser, settings, session_factory)

    await asyncio.wait_for(worker.run(), timeout=5)

    assert worker.stopping
    assert (await BuildQueue(session).get_build(build_id)).status == BuildStatus.complete


@pytest.mark.asyncio
async def test_heartbeat_errors_do_not_discard_result(
    session, session_factory, settings, package, monkeypatch
):
    build_id = await _submit(session)
    beats = []

    async def broken_heartbeat(self, build_id, builder_id):
        beats.append(build_id)
        raise OperationalError("UPDATE build", {}, ConnectionResetError("connection dropped"))

    monkeypatch.setattr(BuildQueue, "heartbeat", broken_heartbeat)

    class SlowParser(RecordingParser):
        async def __call__(self, task):
            await asyncio.sleep(0.1)
            return await super().__call__(task)

    fast_settings = settings.model_copy(update={"worker_heartbeat_interval_sec": 0.01})

    assert await _worker(SlowParser(), fast_settings, session_factory).run_once() is True

    assert len(beats) >= 2
    assert (await BuildQueue(session).get_build(build_id)).status == BuildStatus.complete
