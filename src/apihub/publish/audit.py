"""Differences between a migration rebuild and the revision it reproduces."""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.db import models as db_models
from apihub.domain.models import BuildResult

logger = structlog.get_logger()

_VERSION_FIELDS = ("status", "labels", "previous_version", "previous_version_package_id")
_CONTENT_FIELDS = ("checksum", "slug", "media_type", "title", "data_type", "operation_ids")
_OPERATION_FIELDS = ("data_hash", "type", "title", "deprecated", "kind", "api_audience", "tags")


def _diff(existing: dict[str, Any], new: dict[str, Any]) -> dict[str, Any]:
    return {
        key: {"old": existing.get(key), "new": new.get(key)}
        for key in sorted(set(existing) | set(new))
        if existing.get(key) != new.get(key)
    }


def _keyed_changes(
    existing: dict[str, dict[str, Any]], new: dict[str, dict[str, Any]]
) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for key in sorted(set(existing) | set(new)):
        if key not in new:
            changes[key] = {"removed": True}
        elif key not in existing:
            changes[key] = {"added": True}
        else:
            diff = _diff(existing[key], new[key])
            if diff:
                changes[key] = diff
    return changes


async def collect_migration_changes(
    session: AsyncSession, result: BuildResult, revision: int
) -> tuple[dict[str, Any], dict[str, int]]:
    """Compare a migration result with the stored rows of the same revision.

    Returns the changes grouped by table and a ``{table: changed rows}``
    overview. Both are empty when the rebuild reproduces the revision exactly.
    """
    info = result.version
    package_id, version = info.package_id, info.version
    changes: dict[str, Any] = {}

    version_row = await session.get(db_models.PublishedVersionRow, (package_id, version, revision))
    if version_row is not None:
        stored = {field: getattr(version_row, field) for field in _VERSION_FIELDS}
        stored["previous_version"] = stored["previous_version"] or ""
        stored["previous_version_package_id"] = stored["previous_version_package_id"] or ""
        rebuilt = {
            "status": info.status.value,
            "labels": list(info.labels),
            "previous_version": info.previous_version,
            "previous_version_package_id": info.previous_version_package_id,
        }
        diff = _diff(stored, rebuilt)
        if diff:
            changes["published_version"] = diff

    content_rows = (
        await session.execute(
            select(db_models.PublishedContentRow).where(
                db_models.PublishedContentRow.package_id == package_id,
                db_models.PublishedContentRow.version == version,
                db_models.PublishedContentRow.revision == revision,
            )
        )
    ).scalars()
    stored_content = {
        row.file_id: {field: getattr(row, field) for field in _CONTENT_FIELDS}
        for row in content_rows
    }
    rebuilt_content = {
        doc.file_id: {
            "checksum": doc.checksum,
            "slug": doc.slug,
            "media_type": doc.media_type,
            "title": doc.title,
            "data_type": doc.type,
            "operation_ids": list(doc.operation_ids),
        }
        for doc in result.documents
    }
    content_changes = _keyed_changes(stored_content, rebuilt_content)
    if content_changes:
        changes["published_version_revision_content"] = content_changes

    operation = db_models.OperationRow
    columns = [getattr(operation, field) for field in _OPERATION_FIELDS]
    operation_rows = (
        await session.execute(
            select(operation.operation_id, *columns).where(
                operation.package_id == package_id,
                operation.version == version,
                operation.revision == revision,
            )
        )
    ).all()
    stored_operations = {
        row[0]: dict(zip(_OPERATION_FIELDS, row[1:])) for row in operation_rows
    }
    rebuilt_operations = {
        op.operation_id: {
            "data_hash": op.data_hash,
            "type": op.api_type.value,
            "title": op.title,
            "deprecated": op.deprecated,
            "kind": op.api_kind,
            "api_audience": op.api_audience,
            "tags": list(op.tags),
        }
        for op in result.operations
    }
    operation_changes = _keyed_changes(stored_operations, rebuilt_operations)
    if operation_changes:
        changes["operation"] = operation_changes

    hashes = [data.data_hash for data in result.operation_data]
    if hashes:
        stored_scopes = dict(
            (
                await session.execute(
                    select(
                        db_models.OperationDataRow.data_hash,
                        db_models.OperationDataRow.search_scope,
                    ).where(db_models.OperationDataRow.data_hash.in_(hashes))
                )
            ).all()
        )
        scope_changes = {
            data.data_hash: _diff(stored_scopes[data.data_hash], data.search_scope)
            for data in result.operation_data
            if data.data_hash in stored_scopes and stored_scopes[data.data_hash] != data.search_scope
        }
        if scope_changes:
            changes["operation_data"] = scope_changes

    overview = {table: len(table_changes) for table, table_changes in changes.items()}
    if overview:
        logger.info(
            "migration_changes_detected",
            package_id=package_id,
            version=f"{version}@{revision}",
            overview=overview,
        )
    return changes, overview
