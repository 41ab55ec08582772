from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class BuildStatus(StrEnum):
    """Enumeration of build states."""

    none = "none"
    running = "running"
    complete = "complete"
    error = "error"


TERMINAL_BUILD_STATUSES = frozenset({BuildStatus.complete, BuildStatus.error})


class BuildType(StrEnum):
    publish = "build"
    changelog = "changelog"
    document_group = "documentGroup"
    reduced_source_specifications = "reducedSourceSpecifications"
    merged_specification = "mergedSpecification"
    export_version = "exportVersion"
    export_rest_document = "exportRestDocument"
    export_rest_operations_group = "exportRestOperationsGroup"


# Build types whose result is committed as a new revision.
PUBLISHING_BUILD_TYPES = frozenset({BuildType.publish})


class VersionStatus(StrEnum):
    draft = "draft"
    release = "release"
    archived = "archived"


class PackageKind(StrEnum):
    workspace = "workspace"
    group = "group"
    package = "package"
    dashboard = "dashboard"


class ApiType(StrEnum):
    rest = "rest"
    graphql = "graphql"


class Severity(StrEnum):
    breaking = "breaking"
    semi_breaking = "semi-breaking"
    deprecated = "deprecated"
    non_breaking = "non-breaking"
    annotation = "annotation"
    unclassified = "unclassified"


class CamelModel(BaseModel):
    """Base for payloads exchanged with builders in camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChangeSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    breaking: int = 0
    semi_breaking: int = Field(default=0, alias="semi-breaking")
    deprecated: int = 0
    non_breaking: int = Field(default=0, alias="non-breaking")
    annotation: int = 0
    unclassified: int = 0

    def count(self, severity: Severity | str) -> int:
        return int(self.to_json_dict().get(str(severity), 0))

    def to_json_dict(self) -> dict[str, int]:
        return self.model_dump(by_alias=True)


# Build submission


class BuildConfigRef(CamelModel):
    ref_id: str
    version: str
    parent_ref_id: str = ""
    parent_version: str = ""
    excluded: bool = False


class BuildConfigFile(CamelModel):
    file_id: str
    slug: str = ""
    labels: list[str] = Field(default_factory=list)
    publish: bool = True
    blob_id: str = ""


class BuildConfigMetadata(CamelModel):
    branch_name: str = ""
    repository_url: str = ""
    cloud_name: str = ""
    cloud_url: str = ""
    namespace: str = ""
    version_labels: list[str] = Field(default_factory=list)


class BuildConfig(CamelModel):
    """Instructions handed to a builder together with the source bundle."""

    package_id: str
    version: str
    build_type: BuildType = BuildType.publish
    previous_version: str = ""
    previous_version_package_id: str = ""
    status: VersionStatus = VersionStatus.draft
    refs: list[BuildConfigRef] = Field(default_factory=list)
    files: list[BuildConfigFile] = Field(default_factory=list)
    publish_id: str = ""
    metadata: BuildConfigMetadata = Field(default_factory=BuildConfigMetadata)
    created_by: str = ""
    no_changelog: bool = Field(default=False, alias="noChangeLog")
    published_at: datetime | None = None
    migration_build: bool = False
    migration_id: str = ""
    revision: int = 0
    comparison_revision: int = 0
    comparison_prev_revision: int = 0
    service_name: str = ""
    api_type: str = ""
    group_name: str = ""
    format: str = ""
    external_metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_discriminators(self) -> "BuildConfig":
        if not self.package_id or not self.version:
            raise ValueError("packageId and version are required")
        if self.build_type == BuildType.changelog:
            if not self.previous_version or not self.previous_version_package_id:
                raise ValueError(
                    "changelog builds require previousVersion and previousVersionPackageId"
                )
        if self.build_type == BuildType.document_group:
            if not (self.api_type and self.group_name and self.format):
                raise ValueError("documentGroup builds require apiType, groupName and format")
        if self.migration_build and self.revision <= 0:
            raise ValueError("migration builds must pin the revision they reproduce")
        return self

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class BuildSubmission(BaseModel):
    package_id: str
    config: BuildConfig
    source: bytes | None = None
    priority: int = 0
    depends: list[str] = Field(default_factory=list)
    created_by: str = ""


class Build(BaseModel):
    build_id: str
    package_id: str
    version: str
    status: BuildStatus
    details: str = ""
    priority: int = 0
    restart_count: int = 0
    builder_id: str | None = None
    created_by: str = ""
    created_at: datetime
    last_active: datetime


class BuildSource(BaseModel):
    build_id: str
    source: bytes | None
    config: BuildConfig


class ChangelogBuildSearch(BaseModel):
    package_id: str
    version: str
    previous_version_package_id: str
    previous_version: str
    build_type: BuildType = BuildType.changelog
    comparison_revision: int = 0
    comparison_prev_revision: int = 0


class DocumentGroupBuildSearch(BaseModel):
    package_id: str
    version: str
    build_type: BuildType = BuildType.document_group
    format: str
    api_type: str
    group_name: str


# Build result


class VersionInfo(BaseModel):
    package_id: str
    version: str
    revision: int = 0
    status: VersionStatus = VersionStatus.draft
    labels: list[str] = Field(default_factory=list)
    previous_version: str = ""
    previous_version_package_id: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str = ""
    published_at: datetime | None = None
    builder_version: str = ""
    migration_build: bool = False
    migration_id: str = ""
    no_changelog: bool = False


class DocumentInfo(BaseModel):
    file_id: str
    slug: str
    checksum: str
    media_type: str = "application/octet-stream"
    title: str = ""
    type: str = "unknown"
    format: str = ""
    filename: str = ""
    description: str = ""
    operation_ids: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DocumentBlob(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    checksum: str
    media_type: str = "application/octet-stream"
    data: bytes


class ReferenceInfo(BaseModel):
    ref_package_id: str
    ref_version: str
    ref_revision: int
    parent_package_id: str = ""
    parent_version: str = ""
    parent_revision: int = 0
    excluded: bool = False


class SourceArchive(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    checksum: str
    data: bytes


class OperationInfo(BaseModel):
    operation_id: str
    api_type: ApiType
    data_hash: str
    title: str = ""
    deprecated: bool = False
    api_kind: str = "bwc"
    api_audience: str = "external"
    metadata: dict[str, Any] = Field(default_factory=dict)
    models: dict[str, str] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    deprecated_info: str = ""
    deprecated_items: list[dict[str, Any]] = Field(default_factory=list)
    previous_release_versions: list[str] = Field(default_factory=list)


class OperationData(BaseModel):
    data_hash: str
    data: dict[str, Any] = Field(default_factory=dict)
    search_scope: dict[str, Any] = Field(default_factory=dict)


class OperationChange(BaseModel):
    operation_id: str = ""
    previous_operation_id: str = ""
    data_hash: str = ""
    previous_data_hash: str = ""
    change_summary: ChangeSummary = Field(default_factory=ChangeSummary)
    changes: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_sides(self) -> "OperationChange":
        if not self.operation_id and not self.previous_operation_id:
            raise ValueError("operation change needs operation_id or previous_operation_id")
        return self


class ComparisonInfo(BaseModel):
    """A version comparison produced by the builder.

    ``revision == 0`` on the comparison of the version being published means
    "the revision this publish is assigned".
    """

    package_id: str = ""
    version: str = ""
    revision: int = 0
    previous_package_id: str = ""
    previous_version: str = ""
    previous_revision: int = 0
    operation_types: list[dict[str, Any]] = Field(default_factory=list)
    from_cache: bool = False
    operation_changes: list[OperationChange] = Field(default_factory=list)


class BuilderNotification(BaseModel):
    severity: int = 0
    message: str
    file_id: str = ""


class BuildResult(BaseModel):
    version: VersionInfo
    documents: list[DocumentInfo] = Field(default_factory=list)
    document_blobs: list[DocumentBlob] = Field(default_factory=list)
    references: list[ReferenceInfo] = Field(default_factory=list)
    source_archive: SourceArchive | None = None
    operations: list[OperationInfo] = Field(default_factory=list)
    operation_data: list[OperationData] = Field(default_factory=list)
    comparisons: list[ComparisonInfo] = Field(default_factory=list)
    notifications: list[BuilderNotification] = Field(default_factory=list)
    service_name: str = ""
    cached_comparison_ids: list[str] = Field(default_factory=list)


# Read models


class Package(BaseModel):
    id: str
    kind: PackageKind
    name: str
    parent_id: str | None = None
    alias: str = ""
    description: str = ""
    service_name: str | None = None
    default_released_version: str | None = None
    rest_grouping_prefix: str = ""
    graphql_grouping_prefix: str = ""
    created_at: datetime | None = None
    deleted_at: datetime | None = None


class Revision(BaseModel):
    package_id: str
    version: str
    revision: int
    status: VersionStatus
    labels: list[str] = Field(default_factory=list)
    previous_version: str | None = None
    previous_version_package_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    created_by: str = ""
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    @property
    def address(self) -> str:
        return f"{self.version}@{self.revision}"


class Document(BaseModel):
    package_id: str
    version: str
    revision: int
    file_id: str
    slug: str
    index: int
    checksum: str
    media_type: str
    title: str = ""
    type: str = "unknown"
    format: str = ""
    filename: str = ""
    description: str = ""
    operation_ids: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Reference(BaseModel):
    package_id: str
    version: str
    revision: int
    ref_package_id: str
    ref_version: str
    ref_revision: int
    parent_package_id: str = ""
    parent_version: str = ""
    parent_revision: int = 0
    excluded: bool = False


class Operation(BaseModel):
    package_id: str
    version: str
    revision: int
    operation_id: str
    api_type: ApiType
    data_hash: str
    title: str = ""
    deprecated: bool = False
    api_kind: str = "bwc"
    api_audience: str = "external"
    metadata: dict[str, Any] = Field(default_factory=dict)
    models: dict[str, str] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)


class OperationTypeCount(BaseModel):
    api_type: ApiType
    operations_count: int = 0
    deprecated_count: int = 0
    no_bwc_operations_count: int = 0
    internal_audience_operations_count: int = 0
    unknown_audience_operations_count: int = 0


class DeprecatedSummary(BaseModel):
    api_type: ApiType
    deprecated_count: int = 0
    tags: list[str] = Field(default_factory=list)


class OperationGroup(BaseModel):
    group_id: str
    package_id: str
    version: str
    revision: int
    api_type: ApiType
    group_name: str
    description: str = ""
    autogenerated: bool = False
    operations_count: int = 0


class VersionComparison(BaseModel):
    comparison_id: str
    package_id: str
    version: str
    revision: int
    previous_package_id: str
    previous_version: str
    previous_revision: int
    operation_types: list[dict[str, Any]] = Field(default_factory=list)
    refs: list[str] = Field(default_factory=list)
    open_count: int = 0
    last_active: datetime
    no_content: bool = False
    builder_version: str = ""


class ChangelogQuery(BaseModel):
    comparison_id: str
    ref_package_id: str = ""
    text_filter: str = ""
    api_type: ApiType | None = None
    api_kind: str = ""
    api_audience: str = ""
    tags: list[str] = Field(default_factory=list)
    empty_tag: bool = False
    group: str = ""
    empty_group: bool = False
    severities: list[Severity] = Field(default_factory=list)
    document_slug: str = ""
    limit: int = 100
    offset: int = 0


class ChangelogEntry(BaseModel):
    comparison_id: str
    package_id: str
    version: str
    revision: int
    previous_package_id: str
    previous_version: str
    previous_revision: int
    operation_id: str = ""
    previous_operation_id: str = ""
    data_hash: str = ""
    previous_data_hash: str = ""
    api_type: str = ""
    api_kind: str = ""
    api_audience: str = ""
    title: str = ""
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    change_summary: ChangeSummary = Field(default_factory=ChangeSummary)
    changes: list[dict[str, Any]] = Field(default_factory=list)


class PackageTransition(BaseModel):
    old_package_id: str
    new_package_id: str
