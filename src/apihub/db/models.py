from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, TSVECTOR
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable across PostgreSQL and SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


JsonType = JSON().with_variant(JSONB(), "postgresql")
SearchVector = TSVECTOR().with_variant(Text(), "sqlite")


class Base(DeclarativeBase):
    pass


# Packages


class PackageRow(Base):
    __tablename__ = "package_group"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    alias: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    parent_id: Mapped[str | None] = mapped_column(String(255), index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    service_name: Mapped[str | None] = mapped_column(String(255))
    default_released_version: Mapped[str | None] = mapped_column(String(255))
    rest_grouping_prefix: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    graphql_grouping_prefix: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime)
    deleted_by: Mapped[str | None] = mapped_column(String(255))


class PackageServiceRow(Base):
    __tablename__ = "package_service"

    workspace_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    package_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    service_name: Mapped[str] = mapped_column(String(255), primary_key=True)


class PackageTransitionRow(Base):
    __tablename__ = "package_transition"

    old_package_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    new_package_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)


# Versions


class PublishedVersionRow(Base):
    __tablename__ = "published_version"

    package_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[str] = mapped_column(String(255), primary_key=True)
    revision: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    labels: Mapped[list[str]] = mapped_column(JsonType, default=list, nullable=False)
    previous_version: Mapped[str | None] = mapped_column(String(255))
    previous_version_package_id: Mapped[str | None] = mapped_column(String(255))
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JsonType, default=dict, nullable=False
    )
    published_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime)
    deleted_by: Mapped[str | None] = mapped_column(String(255))

    __table_args__ = (
        Index("idx_published_version_previous", "previous_version_package_id", "previous_version"),
    )


class PublishedContentRow(Base):
    __tablename__ = "published_version_revision_content"

    package_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[str] = mapped_column(String(255), primary_key=True)
    revision: Mapped[int] = mapped_column(Integer, primary_key=True)
    file_id: Mapped[str] = mapped_column(String(1024), primary_key=True)
    checksum: Mapped[str] = mapped_column(String(255), nullable=False)
    index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    slug: Mapped[str] = mapped_column(String(1024), nullable=False)
    media_type: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    data_type: Mapped[str] = mapped_column(String(64), nullable=False, default="unknown")
    format: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    filename: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    operation_ids: Mapped[list[str]] = mapped_column(JsonType, default=list, nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JsonType, default=dict, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("package_id", "version", "revision", "slug", name="uq_content_slug"),
    )


class PublishedDataRow(Base):
    """Document bytes, stored once per (package, checksum)."""

    __tablename__ = "published_data"

    package_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    checksum: Mapped[str] = mapped_column(String(255), primary_key=True)
    media_type: Mapped[str] = mapped_column(String(255), nullable=False)
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)


class SourceArchiveRow(Base):
    __tablename__ = "published_sources_archives"

    checksum: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)


class PublishedSourceRow(Base):
    __tablename__ = "published_sources"

    package_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[str] = mapped_column(String(255), primary_key=True)
    revision: Mapped[int] = mapped_column(Integer, primary_key=True)
    archive_checksum: Mapped[str] = mapped_column(
        String(255), ForeignKey("published_sources_archives.checksum"), nullable=False
    )
    config: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict, nullable=False)
    publish_meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict, nullable=False)


class PublishedReferenceRow(Base):
    __tablename__ = "published_version_reference"

    package_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[str] = mapped_column(String(255), primary_key=True)
    revision: Mapped[int] = mapped_column(Integer, primary_key=True)
    reference_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    reference_version: Mapped[str] = mapped_column(String(255), primary_key=True)
    reference_revision: Mapped[int] = mapped_column(Integer, primary_key=True)
    parent_reference_id: Mapped[str] = mapped_column(String(255), primary_key=True, default="")
    parent_reference_version: Mapped[str] = mapped_column(
        String(255), primary_key=True, default=""
    )
    parent_reference_revision: Mapped[int] = mapped_column(Integer, primary_key=True, default=0)
    excluded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index(
            "idx_reference_target", "reference_id", "reference_version", "reference_revision"
        ),
    )


# Operations


class OperationRow(Base):
    __tablename__ = "operation"

    package_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[str] = mapped_column(String(255), primary_key=True)
    revision: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation_id: Mapped[str] = mapped_column(String(1024), primary_key=True)
    data_hash: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    deprecated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False, default="bwc")
    api_audience: Mapped[str] = mapped_column(String(64), nullable=False, default="external")
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JsonType, default=dict, nullable=False
    )
    models: Mapped[dict[str, str]] = mapped_column(JsonType, default=dict, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JsonType, default=list, nullable=False)
    deprecated_info: Mapped[str] = mapped_column(Text, nullable=False, default="")
    deprecated_items: Mapped[list[dict[str, Any]]] = mapped_column(
        JsonType, default=list, nullable=False
    )
    previous_release_versions: Mapped[list[str]] = mapped_column(
        JsonType, default=list, nullable=False
    )


class OperationDataRow(Base):
    """Parsed operation body, stored once per data hash."""

    __tablename__ = "operation_data"

    data_hash: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict, nullable=False)
    search_scope: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict, nullable=False)


class RestSearchRow(Base):
    __tablename__ = "ts_rest_operation_data"

    data_hash: Mapped[str] = mapped_column(String(255), primary_key=True)
    scope_request: Mapped[Any] = mapped_column(SearchVector)
    scope_response: Mapped[Any] = mapped_column(SearchVector)
    scope_annotation: Mapped[Any] = mapped_column(SearchVector)
    scope_properties: Mapped[Any] = mapped_column(SearchVector)
    scope_examples: Mapped[Any] = mapped_column(SearchVector)


class GraphqlSearchRow(Base):
    __tablename__ = "ts_graphql_operation_data"

    data_hash: Mapped[str] = mapped_column(String(255), primary_key=True)
    scope_argument: Mapped[Any] = mapped_column(SearchVector)
    scope_property: Mapped[Any] = mapped_column(SearchVector)
    scope_annotation: Mapped[Any] = mapped_column(SearchVector)


class OperationSearchRow(Base):
    __tablename__ = "ts_operation_data"

    data_hash: Mapped[str] = mapped_column(String(255), primary_key=True)
    scope_all: Mapped[Any] = mapped_column(SearchVector)


# Operation groups


class OperationGroupRow(Base):
    __tablename__ = "operation_group"

    group_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    package_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(255), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)
    api_type: Mapped[str] = mapped_column(String(32), nullable=False)
    group_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    autogenerated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint(
            "package_id", "version", "revision", "api_type", "group_name", name="uq_operation_group"
        ),
    )


class GroupedOperationRow(Base):
    __tablename__ = "grouped_operation"

    group_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("operation_group.group_id", ondelete="CASCADE"), primary_key=True
    )
    package_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[str] = mapped_column(String(255), primary_key=True)
    revision: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation_id: Mapped[str] = mapped_column(String(1024), primary_key=True)


class OperationGroupHistoryRow(Base):
    __tablename__ = "operation_group_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict, nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


# Comparisons


class VersionComparisonRow(Base):
    __tablename__ = "version_comparison"

    comparison_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    package_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    version: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    previous_package_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    previous_version: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    previous_revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    operation_types: Mapped[list[dict[str, Any]]] = mapped_column(
        JsonType, default=list, nullable=False
    )
    refs: Mapped[list[str]] = mapped_column(JsonType, default=list, nullable=False)
    open_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_active: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    no_content: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    builder_version: Mapped[str] = mapped_column(String(64), nullable=False, default="")


class OperationComparisonRow(Base):
    __tablename__ = "operation_comparison"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    comparison_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    package_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    version: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    operation_id: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    previous_package_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    previous_version: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    previous_revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    previous_operation_id: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    data_hash: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    previous_data_hash: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    changes_summary: Mapped[dict[str, int]] = mapped_column(JsonType, default=dict, nullable=False)
    changes: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict, nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JsonType, default=dict, nullable=False
    )


class BuilderNotificationRow(Base):
    __tablename__ = "builder_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    build_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    severity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    file_id: Mapped[str] = mapped_column(String(1024), nullable=False, default="")


# Build queue


class BuildRow(Base):
    __tablename__ = "build"

    build_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    package_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    version: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False, default="")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    restart_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    builder_id: Mapped[str | None] = mapped_column(String(255))
    created_by: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_active: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_build_status_priority", "status", "priority", "created_at"),
    )


class BuildSourceRow(Base):
    __tablename__ = "build_src"

    build_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("build.build_id", ondelete="CASCADE"), primary_key=True
    )
    source: Mapped[bytes | None] = mapped_column(LargeBinary)
    config: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict, nullable=False)


class BuildDependencyRow(Base):
    __tablename__ = "build_depends"

    build_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("build.build_id", ondelete="CASCADE"), primary_key=True
    )
    depend_id: Mapped[str] = mapped_column(String(64), primary_key=True, index=True)


class BuildResultRow(Base):
    __tablename__ = "build_result"

    build_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("build.build_id", ondelete="CASCADE"), primary_key=True
    )
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)


class BuildCleanupRunRow(Base):
    __tablename__ = "build_cleanup_run"

    run_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    build_src: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    build_result: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    operation_data: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class MigratedVersionChangesRow(Base):
    __tablename__ = "migrated_version_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(255), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)
    build_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    migration_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    changes: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict, nullable=False)
    changes_overview: Mapped[dict[str, Any]] = mapped_column(
        JsonType, default=dict, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
