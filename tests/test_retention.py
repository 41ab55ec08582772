from datetime import timedelta

import pytest
from sqlalchemy import select, update

from apihub.db import models as db_models
from apihub.db.models import utcnow
from apihub.domain.models import BuildStatus, BuildSubmission
from apihub.queue.repository import BuildQueue
from apihub.queue.retention import BuildRetention
from apihub.versions.store import VersionStore

from factories import PACKAGE_ID, VERSION, make_config, make_result, publish


async def _finished_build(session, version: str, status: BuildStatus, age: timedelta) -> str:
    queue = BuildQueue(session)
    build_id = await queue.submit(
        BuildSubmission(package_id=PACKAGE_ID, config=make_config(version=version), source=b"zip")
    )
    await queue.store_result(build_id, b"result")
    await session.execute(
        update(db_models.BuildRow)
        .where(db_models.BuildRow.build_id == build_id)
        .values(status=status.value, last_active=utcnow() - age)
    )
    await session.commit()
    return build_id


async def _payload_ids(session, model) -> set[str]:
    return set((await session.execute(select(model.build_id))).scalars().all())


@pytest.mark.asyncio
async def test_retention_reaps_expired_payloads(session, settings):
    old_success = await _finished_build(session, "1.0", BuildStatus.complete, timedelta(days=8))
    recent_success = await _finished_build(session, "2.0", BuildStatus.complete, timedelta(days=1))
    old_failure = await _finished_build(session, "3.0", BuildStatus.error, timedelta(days=15))
    recent_failure = await _finished_build(session, "4.0", BuildStatus.error, timedelta(days=8))

    report = await BuildRetention.from_settings(session, settings).run()

    assert (report.build_src, report.build_result, report.operation_data) == (2, 2, 0)
    kept = {recent_success, recent_failure}
    assert await _payload_ids(session, db_models.BuildSourceRow) == kept
    assert await _payload_ids(session, db_models.BuildResultRow) == kept
    builds = await _payload_ids(session, db_models.BuildRow)
    assert {old_success, old_failure} <= builds

    runs = (await session.execute(select(db_models.BuildCleanupRunRow))).scalars().all()
    assert [run.run_id for run in runs] == [report.run_id]


@pytest.mark.asyncio
async def test_retention_reaps_operation_data_of_deleted_versions(session, settings, package):
    await publish(session, settings, make_result())
    await VersionStore(session).mark_version_deleted(PACKAGE_ID, VERSION, "alice")

    report = await BuildRetention(session).run()

    assert report.operation_data == 1
    remaining = await session.execute(select(db_models.OperationDataRow.data_hash))
    assert remaining.scalars().all() == []


@pytest.mark.asyncio
async def test_retention_keeps_data_reused_after_selection(
    session, session_factory, settings, package, monkeypatch
):
    await publish(session, settings, make_result())
    await VersionStore(session).mark_version_deleted(PACKAGE_ID, VERSION, "alice")
    await publish(session, settings, make_result(version="2.0"))
    search_before = (
        await session.execute(
            select(db_models.RestSearchRow.data_hash).where(
                db_models.RestSearchRow.data_hash == "hash-users"
            )
        )
    ).scalars().all()

    async def selected_before_publish(self):
        return ["hash-users"]

    monkeypatch.setattr(BuildRetention, "_orphaned_operation_data", selected_before_publish)

    report = await BuildRetention(session).run()

    assert report.operation_data == 0
    async with session_factory() as fresh:
        remaining = await fresh.execute(select(db_models.OperationDataRow.data_hash))
        assert remaining.scalars().all() == ["hash-users"]
        search_after = await fresh.execute(
            select(db_models.RestSearchRow.data_hash).where(
                db_models.RestSearchRow.data_hash == "hash-users"
            )
        )
        assert search_after.scalars().all() == search_before
