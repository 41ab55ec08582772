from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Sequence

import structlog
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.content.store import ContentStore
from apihub.core.errors import revision_missing, version_not_found
from apihub.db import models as db_models
from apihub.db.models import utcnow
from apihub.domain.identifiers import split_version_revision
from apihub.domain.models import (
    ApiType,
    DeprecatedSummary,
    Document,
    Operation,
    OperationTypeCount,
    Reference,
    Revision,
    VersionStatus,
)

logger = structlog.get_logger()

RevisionKey = tuple[str, str, int]


def revision_from_row(row: db_models.PublishedVersionRow) -> Revision:
    return Revision(
        package_id=row.package_id,
        version=row.version,
        revision=row.revision,
        status=VersionStatus(row.status),
        labels=list(row.labels or []),
        previous_version=row.previous_version,
        previous_version_package_id=row.previous_version_package_id,
        metadata=dict(row.metadata_ or {}),
        created_at=row.published_at,
        created_by=row.created_by,
        deleted_at=row.deleted_at,
        deleted_by=row.deleted_by,
    )


def document_from_row(row: db_models.PublishedContentRow) -> Document:
    return Document(
        package_id=row.package_id,
        version=row.version,
        revision=row.revision,
        file_id=row.file_id,
        slug=row.slug,
        index=row.index,
        checksum=row.checksum,
        media_type=row.media_type,
        title=row.title,
        type=row.data_type,
        format=row.format,
        filename=row.filename,
        description=row.description,
        operation_ids=list(row.operation_ids or []),
        metadata=dict(row.metadata_ or {}),
    )


def reference_from_row(row: db_models.PublishedReferenceRow) -> Reference:
    return Reference(
        package_id=row.package_id,
        version=row.version,
        revision=row.revision,
        ref_package_id=row.reference_id,
        ref_version=row.reference_version,
        ref_revision=row.reference_revision,
        parent_package_id=row.parent_reference_id,
        parent_version=row.parent_reference_version,
        parent_revision=row.parent_reference_revision,
        excluded=row.excluded,
    )


def operation_from_row(row: db_models.OperationRow) -> Operation:
    return Operation(
        package_id=row.package_id,
        version=row.version,
        revision=row.revision,
        operation_id=row.operation_id,
        api_type=ApiType(row.type),
        data_hash=row.data_hash,
        title=row.title,
        deprecated=row.deprecated,
        api_kind=row.kind,
        api_audience=row.api_audience,
        metadata=dict(row.metadata_ or {}),
        models=dict(row.models or {}),
        tags=list(row.tags or []),
    )


def _revision_filter(model, package_id: str, version: str, revision: int):  # type: ignore[no-untyped-def]
    return and_(
        model.package_id == package_id,
        model.version == version,
        model.revision == revision,
    )


@dataclass(slots=True)
class VersionStore:
    """Read access to published revisions and the few mutations they allow."""

    session: AsyncSession

    async def get_latest_revision(self, package_id: str, version: str) -> int:
        """Highest undeleted revision number, or 0 when the version has none."""
        stmt = select(func.max(db_models.PublishedVersionRow.revision)).where(
            db_models.PublishedVersionRow.package_id == package_id,
            db_models.PublishedVersionRow.version == version,
            db_models.PublishedVersionRow.deleted_at.is_(None),
        )
        return (await self.session.execute(stmt)).scalar_one_or_none() or 0

    async def next_revision_number(self, package_id: str, version: str) -> int:
        """``max + 1`` over every revision ever written, deleted ones included."""
        stmt = select(func.max(db_models.PublishedVersionRow.revision)).where(
            db_models.PublishedVersionRow.package_id == package_id,
            db_models.PublishedVersionRow.version == version,
        )
        current = (await self.session.execute(stmt)).scalar_one_or_none() or 0
        return current + 1

    async def get_revision(
        self,
        package_id: str,
        version: str,
        revision: int,
        *,
        include_deleted: bool = False,
    ) -> Revision | None:
        stmt = select(db_models.PublishedVersionRow).where(
            _revision_filter(db_models.PublishedVersionRow, package_id, version, revision)
        )
        if not include_deleted:
            stmt = stmt.where(db_models.PublishedVersionRow.deleted_at.is_(None))
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return revision_from_row(row) if row else None

    async def resolve_revision(self, package_id: str, version_spec: str) -> Revision:
        """Resolve ``v`` (latest undeleted revision) or ``v@r`` (pinned)."""
        version, revision = split_version_revision(version_spec)
        if revision == 0:
            revision = await self.get_latest_revision(package_id, version)
            if revision == 0:
                raise version_not_found(package_id, version_spec)
        found = await self.get_revision(package_id, version, revision)
        if found is None:
            raise version_not_found(package_id, version_spec)
        return found

    async def list_versions(
        self, package_id: str, *, status: VersionStatus | None = None
    ) -> list[Revision]:
        """Latest undeleted revision of every version in the package."""
        latest = (
            select(
                db_models.PublishedVersionRow.version,
                func.max(db_models.PublishedVersionRow.revision).label("revision"),
            )
            .where(
                db_models.PublishedVersionRow.package_id == package_id,
                db_models.PublishedVersionRow.deleted_at.is_(None),
            )
            .group_by(db_models.PublishedVersionRow.version)
            .subquery()
        )
        stmt = (
            select(db_models.PublishedVersionRow)
            .join(
                latest,
                and_(
                    latest.c.version == db_models.PublishedVersionRow.version,
                    latest.c.revision == db_models.PublishedVersionRow.revision,
                ),
            )
            .where(db_models.PublishedVersionRow.package_id == package_id)
            .order_by(db_models.PublishedVersionRow.published_at.desc())
        )
        if status is not None:
            stmt = stmt.where(db_models.PublishedVersionRow.status == status.value)
        rows = (await self.session.execute(stmt)).scalars().all()
        return [revision_from_row(row) for row in rows]

    async def get_documents(self, package_id: str, version: str, revision: int) -> list[Document]:
        stmt = (
            select(db_models.PublishedContentRow)
            .where(_revision_filter(db_models.PublishedContentRow, package_id, version, revision))
            .order_by(db_models.PublishedContentRow.index)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [document_from_row(row) for row in rows]

    async def get_document_by_slug(
        self, package_id: str, version: str, revision: int, slug: str
    ) -> Document | None:
        stmt = select(db_models.PublishedContentRow).where(
            _revision_filter(db_models.PublishedContentRow, package_id, version, revision),
            db_models.PublishedContentRow.slug == slug,
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return document_from_row(row) if row else None

    async def get_document_bytes(
        self, package_id: str, version: str, revision: int, slug: str
    ) -> tuple[Document, bytes] | None:
        """A document row together with its bytes from the content store."""
        document = await self.get_document_by_slug(package_id, version, revision, slug)
        if document is None:
            return None
        data = await ContentStore(self.session).get_blob(package_id, document.checksum)
        if data is None:
            return None
        return document, data

    async def get_references(
        self,
        package_id: str,
        version: str,
        revision: int,
        *,
        include_excluded: bool = False,
    ) -> list[Reference]:
        stmt = select(db_models.PublishedReferenceRow).where(
            _revision_filter(db_models.PublishedReferenceRow, package_id, version, revision)
        )
        if not include_excluded:
            stmt = stmt.where(db_models.PublishedReferenceRow.excluded.is_(False))
        stmt = stmt.order_by(
            db_models.PublishedReferenceRow.reference_id,
            db_models.PublishedReferenceRow.reference_version,
            db_models.PublishedReferenceRow.reference_revision,
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [reference_from_row(row) for row in rows]

    async def transitive_refs(
        self, package_id: str, version: str, revision: int
    ) -> list[RevisionKey]:
        """Depth-first closure over non-excluded references into undeleted revisions.

        Each target appears once, so the walk terminates even on cyclic data.
        """
        visited: set[RevisionKey] = set()
        ordered: list[RevisionKey] = []
        stack: list[RevisionKey] = [(package_id, version, revision)]
        while stack:
            current = stack.pop()
            targets = await self._live_reference_targets(*current)
            for target in reversed(targets):
                if target in visited:
                    continue
                visited.add(target)
                ordered.append(target)
                stack.append(target)
        return ordered

    async def get_operations(
        self,
        package_id: str,
        version: str,
        revision: int,
        *,
        api_type: ApiType | None = None,
        operation_ids: Iterable[str] | None = None,
    ) -> list[Operation]:
        stmt = select(db_models.OperationRow).where(
            _revision_filter(db_models.OperationRow, package_id, version, revision)
        )
        if api_type is not None:
            stmt = stmt.where(db_models.OperationRow.type == api_type.value)
        if operation_ids is not None:
            stmt = stmt.where(db_models.OperationRow.operation_id.in_(list(operation_ids)))
        stmt = stmt.order_by(db_models.OperationRow.operation_id)
        rows = (await self.session.execute(stmt)).scalars().all()
        return [operation_from_row(row) for row in rows]

    async def operation_type_counts(
        self, package_id: str, version: str, revision: int
    ) -> list[OperationTypeCount]:
        """Per-API-type counts over the revision and its active references."""
        counts: dict[ApiType, OperationTypeCount] = {}
        for row in await self._operations_with_refs(package_id, version, revision):
            api_type = ApiType(row.type)
            bucket = counts.setdefault(api_type, OperationTypeCount(api_type=api_type))
            bucket.operations_count += 1
            if row.deprecated:
                bucket.deprecated_count += 1
            if row.kind == "no-bwc":
                bucket.no_bwc_operations_count += 1
            if row.api_audience == "internal":
                bucket.internal_audience_operations_count += 1
            elif row.api_audience == "unknown":
                bucket.unknown_audience_operations_count += 1
        return [counts[key] for key in sorted(counts)]

    async def deprecated_summary(
        self, package_id: str, version: str, revision: int
    ) -> list[DeprecatedSummary]:
        deprecated_counts: dict[ApiType, int] = defaultdict(int)
        tags: dict[ApiType, set[str]] = defaultdict(set)
        for row in await self._operations_with_refs(package_id, version, revision):
            if not (row.deprecated or row.deprecated_items):
                continue
            api_type = ApiType(row.type)
            deprecated_counts[api_type] += 1
            tags[api_type].update(row.tags or [])
        return [
            DeprecatedSummary(
                api_type=api_type,
                deprecated_count=deprecated_counts[api_type],
                tags=sorted(tags[api_type]),
            )
            for api_type in sorted(deprecated_counts)
        ]

    async def patch_version(
        self,
        package_id: str,
        version: str,
        *,
        status: VersionStatus | None = None,
        labels: Sequence[str] | None = None,
    ) -> Revision:
        """Update the mutable fields (status, labels) of the latest revision."""
        latest = await self.resolve_revision(package_id, version)
        values: dict[str, object] = {}
        if status is not None:
            values["status"] = status.value
        if labels is not None:
            values["labels"] = list(labels)
        if values:
            await self.session.execute(
                update(db_models.PublishedVersionRow)
                .where(
                    _revision_filter(
                        db_models.PublishedVersionRow, package_id, latest.version, latest.revision
                    )
                )
                .values(**values)
            )
            await self.session.commit()
            logger.info(
                "version_patched",
                package_id=package_id,
                version=latest.address,
                fields=sorted(values),
            )
        result = await self.get_revision(package_id, latest.version, latest.revision)
        if result is None:
            raise revision_missing(package_id, latest.address)
        return result

    async def mark_version_deleted(self, package_id: str, version: str, user_id: str) -> None:
        """Tombstone every revision of a version and drop the state that pointed at it."""
        version_name, _ = split_version_revision(version)
        now = utcnow()
        try:
            result = await self.session.execute(
                update(db_models.PublishedVersionRow)
                .where(
                    db_models.PublishedVersionRow.package_id == package_id,
                    db_models.PublishedVersionRow.version == version_name,
                    db_models.PublishedVersionRow.deleted_at.is_(None),
                )
                .values(deleted_at=now, deleted_by=user_id)
            )
            if result.rowcount == 0:  # type: ignore[attr-defined]
                raise version_not_found(package_id, version)
            await self.session.execute(
                update(db_models.PackageRow)
                .where(
                    db_models.PackageRow.id == package_id,
                    db_models.PackageRow.default_released_version == version_name,
                )
                .values(default_released_version=None)
            )
            await self.session.execute(
                delete(db_models.GroupedOperationRow).where(
                    db_models.GroupedOperationRow.package_id == package_id,
                    db_models.GroupedOperationRow.version == version_name,
                )
            )
            await self.session.execute(
                update(db_models.PublishedVersionRow)
                .where(
                    or_(
                        db_models.PublishedVersionRow.previous_version_package_id == package_id,
                        and_(
                            db_models.PublishedVersionRow.package_id == package_id,
                            db_models.PublishedVersionRow.previous_version_package_id.is_(None),
                        ),
                    ),
                    db_models.PublishedVersionRow.previous_version == version_name,
                )
                .values(previous_version=None, previous_version_package_id=None)
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        logger.info("version_deleted", package_id=package_id, version=version_name, user_id=user_id)

    async def _live_reference_targets(
        self, package_id: str, version: str, revision: int
    ) -> list[RevisionKey]:
        ref = db_models.PublishedReferenceRow
        target = db_models.PublishedVersionRow
        stmt = (
            select(ref.reference_id, ref.reference_version, ref.reference_revision)
            .join(
                target,
                and_(
                    target.package_id == ref.reference_id,
                    target.version == ref.reference_version,
                    target.revision == ref.reference_revision,
                ),
            )
            .where(
                _revision_filter(ref, package_id, version, revision),
                ref.excluded.is_(False),
                target.deleted_at.is_(None),
            )
            .distinct()
            .order_by(ref.reference_id, ref.reference_version, ref.reference_revision)
        )
        rows = (await self.session.execute(stmt)).all()
        return [(row[0], row[1], row[2]) for row in rows]

    async def _operations_with_refs(
        self, package_id: str, version: str, revision: int
    ) -> list[db_models.OperationRow]:
        keys = [(package_id, version, revision)]
        keys.extend(await self._live_reference_targets(package_id, version, revision))
        conditions = [
            _revision_filter(db_models.OperationRow, pkg, ver, rev) for pkg, ver, rev in keys
        ]
        stmt = select(db_models.OperationRow).where(or_(*conditions))
        return list((await self.session.execute(stmt)).scalars().all())
