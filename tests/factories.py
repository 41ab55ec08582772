"""Builders for configs and results shared by the pipeline tests."""

from __future__ import annotations

from apihub.config import Settings
from apihub.domain.models import (
    ApiType,
    BuildConfig,
    BuildResult,
    BuildSubmission,
    ComparisonInfo,
    DocumentBlob,
    DocumentInfo,
    OperationChange,
    OperationData,
    OperationInfo,
    ReferenceInfo,
    Revision,
    SourceArchive,
    VersionInfo,
    VersionStatus,
)
from apihub.publish.transaction import PublishTransaction
from apihub.queue.repository import BuildQueue

PACKAGE_ID = "acme.svc"
VERSION = "1.0"


def make_config(package_id: str = PACKAGE_ID, version: str = VERSION, **overrides) -> BuildConfig:
    return BuildConfig(package_id=package_id, version=version, created_by="alice", **overrides)


def rest_operation(
    operation_id: str, data_hash: str, path: str, *, tags: list[str] | None = None
) -> OperationInfo:
    return OperationInfo(
        operation_id=operation_id,
        api_type=ApiType.rest,
        data_hash=data_hash,
        title=f"Operation {operation_id}",
        metadata={"path": path, "method": "get"},
        tags=tags or [],
    )


def make_result(
    package_id: str = PACKAGE_ID,
    version: str = VERSION,
    *,
    operations: list[OperationInfo] | None = None,
    checksum: str = "abc",
    revision: int = 0,
    previous_version: str = "",
    references: list[ReferenceInfo] | None = None,
    comparisons: list[ComparisonInfo] | None = None,
    cached_comparison_ids: list[str] | None = None,
    service_name: str = "",
    migration_build: bool = False,
    with_blobs: bool = True,
) -> BuildResult:
    if operations is None:
        operations = [rest_operation("get-users", "hash-users", "/api/users/list")]
    operation_data = {
        op.data_hash: OperationData(
            data_hash=op.data_hash,
            data={"operationId": op.operation_id},
            search_scope={"request": op.title, "response": op.data_hash},
        )
        for op in operations
    }
    document = DocumentInfo(
        file_id="openapi.yaml",
        slug="openapi-yaml",
        checksum=checksum,
        media_type="application/yaml",
        title="Service API",
        type="openapi-3-0",
        operation_ids=[op.operation_id for op in operations],
    )
    blobs = (
        [DocumentBlob(checksum=checksum, media_type="application/yaml", data=b"openapi: 3.0.0\n")]
        if with_blobs
        else []
    )
    return BuildResult(
        version=VersionInfo(
            package_id=package_id,
            version=version,
            revision=revision,
            status=VersionStatus.release,
            previous_version=previous_version,
            created_by="alice",
            builder_version="1.2.0",
            migration_build=migration_build,
        ),
        documents=[document],
        document_blobs=blobs,
        references=references or [],
        source_archive=SourceArchive(checksum=f"src-{version}", data=b"PK\x03\x04"),
        operations=operations,
        operation_data=list(operation_data.values()),
        comparisons=comparisons or [],
        cached_comparison_ids=cached_comparison_ids or [],
        service_name=service_name,
    )


def comparison(
    previous_revision: int,
    *,
    package_id: str = PACKAGE_ID,
    version: str = VERSION,
    previous_version: str = VERSION,
    changes: list[OperationChange] | None = None,
    from_cache: bool = False,
) -> ComparisonInfo:
    return ComparisonInfo(
        package_id=package_id,
        version=version,
        revision=0,
        previous_package_id=package_id,
        previous_version=previous_version,
        previous_revision=previous_revision,
        operation_types=[{"apiType": "rest", "changesSummary": {"breaking": 1}}],
        from_cache=from_cache,
        operation_changes=changes or [],
    )


async def submit_and_lease(
    session, config: BuildConfig, *, builder_id: str = "builder-1", depends: list[str] | None = None
) -> str:
    queue = BuildQueue(session)
    build_id = await queue.submit(
        BuildSubmission(
            package_id=config.package_id,
            config=config,
            source=b"PK\x03\x04",
            depends=depends or [],
        )
    )
    leased = await queue.take_free_build(builder_id)
    assert leased is not None and leased.build_id == build_id
    return build_id


async def publish(
    session,
    settings: Settings,
    result: BuildResult,
    *,
    config: BuildConfig | None = None,
    builder_id: str = "builder-1",
) -> Revision:
    config = config or make_config(result.version.package_id, result.version.version)
    build_id = await submit_and_lease(session, config, builder_id=builder_id)
    return await PublishTransaction(session, settings).publish(
        build_id, result, builder_id=builder_id
    )
