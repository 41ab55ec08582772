import pytest
from sqlalchemy import update

from apihub.core.errors import InternalError, NotFoundError, ValidationError
from apihub.db import models as db_models
from apihub.domain.models import (
    ApiType,
    OperationInfo,
    PackageKind,
    ReferenceInfo,
    VersionStatus,
)
from apihub.packages.store import PackageStore
from apihub.versions.store import VersionStore

from factories import PACKAGE_ID, VERSION, make_result, publish, rest_operation


@pytest.mark.asyncio
async def test_resolve_latest_and_pinned_revision(session, settings, package):
    await publish(session, settings, make_result())
    await publish(session, settings, make_result())
    store = VersionStore(session)

    assert (await store.resolve_revision(PACKAGE_ID, VERSION)).revision == 2
    assert (await store.resolve_revision(PACKAGE_ID, "1.0@1")).address == "1.0@1"
    with pytest.raises(NotFoundError) as exc_info:
        await store.resolve_revision(PACKAGE_ID, "1.0@3")
    assert exc_info.value.code == "PublishedVersionNotFound"
    with pytest.raises(ValidationError) as exc_info:
        await store.resolve_revision(PACKAGE_ID, "1.0@latest")
    assert exc_info.value.code == "InvalidRevisionFormat"


@pytest.mark.asyncio
async def test_list_versions_returns_latest_revisions(session, settings, package):
    await publish(session, settings, make_result())
    await publish(session, settings, make_result())
    await publish(session, settings, make_result(version="2.0"))
    store = VersionStore(session)

    listed = await store.list_versions(PACKAGE_ID)

    assert sorted(rev.address for rev in listed) == ["1.0@2", "2.0@1"]
    assert await store.list_versions(PACKAGE_ID, status=VersionStatus.draft) == []


@pytest.mark.asyncio
async def test_patch_version_updates_latest_revision(session, settings, package):
    await publish(session, settings, make_result())
    await publish(session, settings, make_result())

    patched = await VersionStore(session).patch_version(
        PACKAGE_ID, VERSION, status=VersionStatus.archived, labels=["lts"]
    )

    assert patched.revision == 2
    assert patched.status == VersionStatus.archived
    assert patched.labels == ["lts"]


@pytest.mark.asyncio
async def test_document_bytes_come_from_content_store(session, settings, package):
    await publish(session, settings, make_result())
    store = VersionStore(session)

    found = await store.get_document_bytes(PACKAGE_ID, VERSION, 1, "openapi-yaml")

    assert found is not None
    document, data = found
    assert document.file_id == "openapi.yaml"
    assert data == b"openapi: 3.0.0\n"
    assert await store.get_document_bytes(PACKAGE_ID, VERSION, 1, "missing") is None


@pytest.mark.asyncio
async def test_delete_version_clears_pointers(session, session_factory, settings, package):
    await publish(session, settings, make_result())
    await publish(session, settings, make_result(version="2.0", previous_version=VERSION))
    await session.execute(
        update(db_models.PackageRow)
        .where(db_models.PackageRow.id == PACKAGE_ID)
        .values(default_released_version=VERSION)
    )
    await session.commit()

    await VersionStore(session).mark_version_deleted(PACKAGE_ID, VERSION, "alice")

    async with session_factory() as fresh:
        store = VersionStore(fresh)
        assert await store.get_latest_revision(PACKAGE_ID, VERSION) == 0
        assert await store.next_revision_number(PACKAGE_ID, VERSION) == 2
        deleted = await store.get_revision(PACKAGE_ID, VERSION, 1, include_deleted=True)
        assert deleted is not None and deleted.deleted_by == "alice"
        successor = await store.resolve_revision(PACKAGE_ID, "2.0")
        assert successor.previous_version is None
        assert successor.previous_version_package_id is None
        pkg = await PackageStore(fresh).require_package(PACKAGE_ID)
        assert pkg.default_released_version is None
        with pytest.raises(NotFoundError):
            await store.mark_version_deleted(PACKAGE_ID, VERSION, "alice")


@pytest.mark.asyncio
async def test_transitive_refs_terminate_on_cycles(session, settings, package):
    await PackageStore(session).create_package("acme.lib", PackageKind.package, "Library")
    await publish(session, settings, make_result())
    await publish(session, settings, make_result("acme.lib"))
    session.add_all(
        [
            db_models.PublishedReferenceRow(
                package_id=PACKAGE_ID,
                version=VERSION,
                revision=1,
                reference_id="acme.lib",
                reference_version=VERSION,
                reference_revision=1,
            ),
            db_models.PublishedReferenceRow(
                package_id="acme.lib",
                version=VERSION,
                revision=1,
                reference_id=PACKAGE_ID,
                reference_version=VERSION,
                reference_revision=1,
            ),
        ]
    )
    await session.commit()

    refs = await VersionStore(session).transitive_refs(PACKAGE_ID, VERSION, 1)

    assert refs == [("acme.lib", VERSION, 1), (PACKAGE_ID, VERSION, 1)]


@pytest.mark.asyncio
async def test_operation_counts_include_references(session, settings, package):
    await PackageStore(session).create_package("acme.lib", PackageKind.package, "Library")
    await publish(
        session,
        settings,
        make_result("acme.lib", operations=[rest_operation("get-lib", "hash-lib", "/lib")]),
    )
    deprecated = OperationInfo(
        operation_id="delete-user",
        api_type=ApiType.rest,
        data_hash="hash-delete",
        deprecated=True,
        api_audience="internal",
        tags=["users"],
    )
    operations = [rest_operation("get-users", "hash-users", "/api/users/list"), deprecated]
    references = [ReferenceInfo(ref_package_id="acme.lib", ref_version=VERSION, ref_revision=1)]
    await publish(session, settings, make_result(operations=operations, references=references))
    store = VersionStore(session)

    counts = await store.operation_type_counts(PACKAGE_ID, VERSION, 1)
    summary = await store.deprecated_summary(PACKAGE_ID, VERSION, 1)

    assert len(counts) == 1
    assert counts[0].api_type == ApiType.rest
    assert counts[0].operations_count == 3
    assert counts[0].deprecated_count == 1
    assert counts[0].internal_audience_operations_count == 1
    assert [(s.api_type, s.deprecated_count, s.tags) for s in summary] == [
        (ApiType.rest, 1, ["users"])
    ]


@pytest.mark.asyncio
async def test_patch_version_reports_vanished_revision(session, settings, package, monkeypatch):
    await publish(session, settings, make_result())
    original = VersionStore.get_revision
    calls = []

    async def vanishing(self, *args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return await original(self, *args, **kwargs)
        return None

    monkeypatch.setattr(VersionStore, "get_revision", vanishing)

    with pytest.raises(InternalError) as exc_info:
        await VersionStore(session).patch_version(PACKAGE_ID, VERSION, labels=["lts"])
    assert exc_info.value.code == "PublishedRevisionMissing"
