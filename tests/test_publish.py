import pytest
from sqlalchemy import func, select

from apihub.changelog.engine import ChangelogEngine
from apihub.core.errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from apihub.db import models as db_models
from apihub.domain.identifiers import make_comparison_id
from apihub.domain.models import (
    ApiType,
    BuildStatus,
    BuildType,
    ChangeSummary,
    OperationChange,
    PackageKind,
    ReferenceInfo,
)
from apihub.packages.store import PackageStore
from apihub.publish.transaction import PublishTransaction
from apihub.queue.repository import BuildQueue
from apihub.versions.groups import OperationGroupStore
from apihub.versions.store import VersionStore

from factories import (
    PACKAGE_ID,
    VERSION,
    comparison,
    make_config,
    make_result,
    publish,
    rest_operation,
    submit_and_lease,
)


async def _count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


def _users_change(data_hash: str, previous_data_hash: str) -> OperationChange:
    return OperationChange(
        operation_id="get-users",
        previous_operation_id="get-users",
        data_hash=data_hash,
        previous_data_hash=previous_data_hash,
        change_summary=ChangeSummary(breaking=1),
        changes=[{"action": "remove", "path": "/responses/200"}],
    )


@pytest.mark.asyncio
async def test_fresh_publish_creates_first_revision(session, settings, package):
    revision = await publish(session, settings, make_result(checksum="abc"))

    assert revision.package_id == PACKAGE_ID
    assert revision.version == VERSION
    assert revision.revision == 1
    assert revision.metadata["builderVersion"] == "1.2.0"
    assert await _count(session, db_models.PublishedDataRow) == 1
    assert await _count(session, db_models.VersionComparisonRow) == 0

    store = VersionStore(session)
    documents = await store.get_documents(PACKAGE_ID, VERSION, 1)
    assert [doc.slug for doc in documents] == ["openapi-yaml"]
    found = await store.get_document_bytes(PACKAGE_ID, VERSION, 1, "openapi-yaml")
    assert found is not None and found[1] == b"openapi: 3.0.0\n"
    operations = await store.get_operations(PACKAGE_ID, VERSION, 1)
    assert [op.operation_id for op in operations] == ["get-users"]


@pytest.mark.asyncio
async def test_republish_identical_dedups_content(session, settings, package):
    await publish(session, settings, make_result(checksum="abc"))
    revision = await publish(session, settings, make_result(checksum="abc"))

    assert revision.revision == 2
    assert await _count(session, db_models.PublishedDataRow) == 1
    assert await _count(session, db_models.OperationDataRow) == 1
    assert await _count(session, db_models.OperationRow) == 2


@pytest.mark.asyncio
async def test_republish_with_diff_writes_comparison(session, settings, package):
    await publish(session, settings, make_result())
    await publish(session, settings, make_result())
    changed = make_result(
        operations=[rest_operation("get-users", "hash-users-v2", "/api/users/list")],
        comparisons=[comparison(2, changes=[_users_change("hash-users-v2", "hash-users")])],
    )

    revision = await publish(session, settings, changed)

    assert revision.revision == 3
    assert await _count(session, db_models.OperationDataRow) == 2
    expected_id = make_comparison_id(PACKAGE_ID, VERSION, 3, PACKAGE_ID, VERSION, 2)
    stored = await ChangelogEngine(session).get_comparison(expected_id)
    assert stored is not None
    assert (stored.revision, stored.previous_revision) == (3, 2)
    assert stored.builder_version == "1.2.0"


@pytest.mark.asyncio
async def test_revision_numbers_have_no_gaps(session, settings, package):
    for _ in range(4):
        await publish(session, settings, make_result())

    revisions = (
        await session.execute(
            select(db_models.PublishedVersionRow.revision).order_by(
                db_models.PublishedVersionRow.revision
            )
        )
    ).scalars().all()
    assert revisions == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_conflicting_declared_revision_is_rejected(session, settings, package):
    await publish(session, settings, make_result())

    with pytest.raises(ConflictError) as exc_info:
        await publish(session, settings, make_result(revision=5))
    assert exc_info.value.code == "RevisionConflict"
    assert await _count(session, db_models.PublishedVersionRow) == 1


@pytest.mark.parametrize(
    "step",
    [
        "_store_blobs",
        "_store_documents",
        "_store_references",
        "_store_sources",
        "_store_operation_data",
        "_store_operations",
        "_refresh_search",
        "_store_comparisons",
        "_store_notifications",
        "_propagate_groups",
        "_bind_service",
        "_complete_build",
    ],
)
@pytest.mark.asyncio
async def test_failed_step_rolls_back_everything(session, settings, package, monkeypatch, step):
    async def failing(*args, **kwargs):
        raise RuntimeError(f"{step} exploded")

    monkeypatch.setattr(PublishTransaction, step, failing)
    build_id = await submit_and_lease(session, make_config())
    result = make_result(
        comparisons=[comparison(0, previous_version="0.9")], service_name="billing"
    )

    with pytest.raises(RuntimeError):
        await PublishTransaction(session, settings).publish(build_id, result, builder_id="builder-1")

    for model in (
        db_models.PublishedVersionRow,
        db_models.PublishedContentRow,
        db_models.PublishedDataRow,
        db_models.PublishedSourceRow,
        db_models.SourceArchiveRow,
        db_models.OperationRow,
        db_models.OperationDataRow,
        db_models.OperationSearchRow,
        db_models.VersionComparisonRow,
        db_models.BuilderNotificationRow,
        db_models.PackageServiceRow,
    ):
        assert await _count(session, model) == 0, model.__tablename__
    build = await BuildQueue(session).get_build(build_id)
    assert build.status == BuildStatus.running


@pytest.mark.asyncio
async def test_replayed_result_is_rejected(session, settings, package):
    build_id = await submit_and_lease(session, make_config())
    transaction = PublishTransaction(session, settings)
    await transaction.publish(build_id, make_result(), builder_id="builder-1")

    with pytest.raises(ConflictError) as exc_info:
        await transaction.publish(build_id, make_result(), builder_id="builder-1")
    assert exc_info.value.code == "BuildAlreadyFinished"
    assert await _count(session, db_models.PublishedVersionRow) == 1


@pytest.mark.asyncio
async def test_publish_by_non_owner_is_forbidden(session, settings, package):
    build_id = await submit_and_lease(session, make_config(), builder_id="builder-1")

    with pytest.raises(ForbiddenError) as exc_info:
        await PublishTransaction(session, settings).publish(
            build_id, make_result(), builder_id="builder-2"
        )
    assert exc_info.value.code == "BuildNotOwned"


@pytest.mark.asyncio
async def test_result_for_other_version_is_invalid(session, settings, package):
    build_id = await submit_and_lease(session, make_config(version="2.0"))

    with pytest.raises(ValidationError) as exc_info:
        await PublishTransaction(session, settings).publish(build_id, make_result())
    assert exc_info.value.code == "InvalidBuildResult"


@pytest.mark.asyncio
async def test_missing_document_bytes_are_rejected(session, settings, package):
    with pytest.raises(ValidationError) as exc_info:
        await publish(session, settings, make_result(checksum="never-uploaded", with_blobs=False))
    assert "never-uploaded" in exc_info.value.rendered_message


@pytest.mark.asyncio
async def test_blob_uploaded_earlier_may_be_omitted(session, settings, package):
    await publish(session, settings, make_result(checksum="abc"))
    revision = await publish(session, settings, make_result(checksum="abc", with_blobs=False))

    assert revision.revision == 2
    assert await _count(session, db_models.PublishedDataRow) == 1


@pytest.mark.asyncio
async def test_unknown_package_is_rejected(session, settings):
    with pytest.raises(NotFoundError) as exc_info:
        await publish(session, settings, make_result())
    assert exc_info.value.code == "PackageNotFound"


@pytest.mark.asyncio
async def test_self_reference_is_a_cycle(session, settings, package):
    result = make_result(
        references=[ReferenceInfo(ref_package_id=PACKAGE_ID, ref_version=VERSION, ref_revision=1)]
    )

    with pytest.raises(ValidationError) as exc_info:
        await publish(session, settings, result)
    assert exc_info.value.code == "ReferenceCycle"


@pytest.mark.asyncio
async def test_reference_to_missing_revision_is_rejected(session, settings, package):
    result = make_result(
        references=[ReferenceInfo(ref_package_id="acme.other", ref_version="3.0", ref_revision=1)]
    )

    with pytest.raises(NotFoundError) as exc_info:
        await publish(session, settings, result)
    assert exc_info.value.code == "PublishedVersionNotFound"


@pytest.mark.asyncio
async def test_migration_rebuild_cannot_close_a_reference_cycle(
    session, session_factory, settings, package
):
    await PackageStore(session).create_package("acme.lib", PackageKind.package, "Library")
    await publish(session, settings, make_result())
    await publish(
        session,
        settings,
        make_result(
            "acme.lib",
            "2.0",
            references=[
                ReferenceInfo(ref_package_id=PACKAGE_ID, ref_version=VERSION, ref_revision=1)
            ],
        ),
    )
    rebuild = make_result(
        revision=1,
        migration_build=True,
        references=[ReferenceInfo(ref_package_id="acme.lib", ref_version="2.0", ref_revision=1)],
    )
    config = make_config(migration_build=True, revision=1, migration_id="m-1")

    async with session_factory() as fresh:
        with pytest.raises(ValidationError) as exc_info:
            await publish(fresh, settings, rebuild, config=config)
    assert exc_info.value.code == "ReferenceCycle"

    refs = await VersionStore(session).transitive_refs("acme.lib", "2.0", 1)
    assert refs == [(PACKAGE_ID, VERSION, 1)]


@pytest.mark.asyncio
async def test_cached_comparison_is_not_rewritten(session, settings, package):
    await publish(session, settings, make_result())
    await publish(
        session,
        settings,
        make_result(
            operations=[rest_operation("get-users", "hash-users-v2", "/api/users/list")],
            comparisons=[comparison(1, changes=[_users_change("hash-users-v2", "hash-users")])],
        ),
    )
    cached_id = make_comparison_id(PACKAGE_ID, VERSION, 2, PACKAGE_ID, VERSION, 1)
    rows_before = (
        await session.execute(
            select(db_models.OperationComparisonRow.id).where(
                db_models.OperationComparisonRow.comparison_id == cached_id
            )
        )
    ).scalars().all()
    assert len(rows_before) == 1

    await publish(
        session,
        settings,
        make_result(
            operations=[rest_operation("get-users", "hash-users-v3", "/api/users/list")],
            comparisons=[comparison(2, changes=[_users_change("hash-users-v3", "hash-users-v2")])],
            cached_comparison_ids=[cached_id],
        ),
    )

    rows_after = (
        await session.execute(
            select(db_models.OperationComparisonRow.id).where(
                db_models.OperationComparisonRow.comparison_id == cached_id
            )
        )
    ).scalars().all()
    assert rows_after == rows_before
    main_id = make_comparison_id(PACKAGE_ID, VERSION, 3, PACKAGE_ID, VERSION, 2)
    main = await ChangelogEngine(session).get_comparison(main_id)
    assert main is not None and main.refs == [cached_id]


@pytest.mark.asyncio
async def test_unknown_cached_comparison_fails_publish(session, settings, package):
    result = make_result(
        comparisons=[comparison(0, previous_version="0.9")],
        cached_comparison_ids=["does-not-exist"],
    )

    with pytest.raises(ValidationError) as exc_info:
        await publish(session, settings, result)
    assert exc_info.value.code == "CachedComparisonNotFound"
    assert await _count(session, db_models.PublishedVersionRow) == 0


@pytest.mark.asyncio
async def test_no_changelog_skips_comparisons(session, settings, package):
    result = make_result(comparisons=[comparison(0, previous_version="0.9")])

    await publish(session, settings, result, config=make_config(no_changelog=True))

    assert await _count(session, db_models.VersionComparisonRow) == 0


@pytest.mark.asyncio
async def test_manual_groups_follow_new_revision(session, settings, package):
    await publish(
        session,
        settings,
        make_result(
            operations=[
                rest_operation("get-users", "hash-users", "/api/users/list"),
                rest_operation("get-orders", "hash-orders", "/api/orders/list"),
            ]
        ),
    )
    groups = OperationGroupStore(session)
    group = await groups.create_group(
        PACKAGE_ID, VERSION, 1, ApiType.rest, "partner", description="Partner API"
    )
    await groups.set_group_operations(
        group.group_id,
        [(PACKAGE_ID, VERSION, 1, "get-users"), (PACKAGE_ID, VERSION, 1, "get-orders")],
    )

    await publish(session, settings, make_result())

    copied = await groups.get_group(PACKAGE_ID, VERSION, 2, ApiType.rest, "partner")
    assert copied is not None
    assert copied.description == "Partner API"
    assert await groups.get_group_operation_ids(copied.group_id) == [
        (PACKAGE_ID, VERSION, 2, "get-users")
    ]


@pytest.mark.asyncio
async def test_grouping_prefix_builds_autogenerated_groups(session, settings, package):
    await PackageStore(session).set_grouping_prefixes(PACKAGE_ID, rest="/api/{group}/")

    await publish(
        session,
        settings,
        make_result(
            operations=[
                rest_operation("get-users", "hash-users", "/api/users/list"),
                rest_operation("get-orders", "hash-orders", "/api/orders/list"),
                rest_operation("health", "hash-health", "/health"),
            ]
        ),
    )

    listed = await OperationGroupStore(session).list_groups(PACKAGE_ID, VERSION, 1)
    assert [(group.group_name, group.autogenerated, group.operations_count) for group in listed] == [
        ("orders", True, 1),
        ("users", True, 1),
    ]


@pytest.mark.asyncio
async def test_service_name_is_bound_to_package(session, settings, package):
    await publish(session, settings, make_result(service_name="billing"))

    stored = await PackageStore(session).require_package(PACKAGE_ID)
    assert stored.service_name == "billing"
    binding = (await session.execute(select(db_models.PackageServiceRow))).scalar_one()
    assert (binding.workspace_id, binding.package_id, binding.service_name) == (
        "acme",
        PACKAGE_ID,
        "billing",
    )


@pytest.mark.asyncio
async def test_migration_rebuild_records_audit(session, session_factory, settings, package):
    settings.migration_audit_enabled = True
    await publish(session, settings, make_result())
    rebuild = make_result(
        revision=1,
        migration_build=True,
        operations=[rest_operation("get-users", "hash-users-v2", "/api/users/list")],
    )
    config = make_config(migration_build=True, revision=1, migration_id="m-1")

    async with session_factory() as fresh:
        revision = await publish(fresh, settings, rebuild, config=config)
        assert revision.revision == 1
        operations = await VersionStore(fresh).get_operations(PACKAGE_ID, VERSION, 1)
        audit = (await fresh.execute(select(db_models.MigratedVersionChangesRow))).scalar_one()

    assert [op.data_hash for op in operations] == ["hash-users-v2"]
    assert audit.migration_id == "m-1"
    assert audit.changes["operation"]["get-users"]["data_hash"] == {
        "old": "hash-users",
        "new": "hash-users-v2",
    }
    assert audit.changes_overview["operation"] == 1


@pytest.mark.asyncio
async def test_changelog_build_stores_comparison(session, settings, package):
    await publish(session, settings, make_result())
    await publish(
        session,
        settings,
        make_result(operations=[rest_operation("get-users", "hash-users-v2", "/api/users/list")]),
    )
    config = make_config(
        build_type=BuildType.changelog,
        previous_version=VERSION,
        previous_version_package_id=PACKAGE_ID,
        comparison_revision=2,
        comparison_prev_revision=1,
    )
    build_id = await submit_and_lease(session, config)
    result = make_result(
        comparisons=[comparison(1, changes=[_users_change("hash-users-v2", "hash-users")])]
    )

    await PublishTransaction(session, settings).commit_result(
        build_id, result.model_dump_json().encode(), builder_id="builder-1"
    )

    comparison_id = make_comparison_id(PACKAGE_ID, VERSION, 2, PACKAGE_ID, VERSION, 1)
    assert await ChangelogEngine(session).get_comparison(comparison_id) is not None
    build = await BuildQueue(session).get_build(build_id)
    assert build.status == BuildStatus.complete
    assert await BuildQueue(session).get_result(build_id) is not None
    assert await _count(session, db_models.PublishedVersionRow) == 2


@pytest.mark.asyncio
async def test_export_build_keeps_raw_output(session, settings, package):
    config = make_config(build_type=BuildType.export_version, format="html")
    build_id = await submit_and_lease(session, config)

    await PublishTransaction(session, settings).commit_result(
        build_id, b"<html></html>", builder_id="builder-1"
    )

    assert await BuildQueue(session).get_result(build_id) == b"<html></html>"
    assert (await BuildQueue(session).get_build(build_id)).status == BuildStatus.complete


@pytest.mark.asyncio
async def test_malformed_payload_is_invalid(session, settings, package):
    build_id = await submit_and_lease(session, make_config())

    with pytest.raises(ValidationError) as exc_info:
        await PublishTransaction(session, settings).commit_result(
            build_id, b"{not json", builder_id="builder-1"
        )
    assert exc_info.value.code == "InvalidBuildResult"


@pytest.mark.asyncio
async def test_revision_missing_after_commit_is_internal_error(
    session, settings, package, monkeypatch
):
    async def vanished(self, *args, **kwargs):
        return None

    monkeypatch.setattr(VersionStore, "get_revision", vanished)

    with pytest.raises(InternalError) as exc_info:
        await publish(session, settings, make_result())

    assert exc_info.value.code == "PublishedRevisionMissing"
    assert exc_info.value.params == {"packageId": PACKAGE_ID, "version": "1.0@1"}
