from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.core.errors import NotFoundError, ValidationError
from apihub.db import models as db_models
from apihub.db.models import utcnow
from apihub.db.statements import upsert
from apihub.domain.identifiers import make_comparison_id, make_operation_group_id
from apihub.domain.models import (
    ChangeSummary,
    ChangelogEntry,
    ChangelogQuery,
    ComparisonInfo,
    OperationChange,
    Severity,
    VersionComparison,
)
from apihub.versions.store import VersionStore

logger = structlog.get_logger()


@dataclass(slots=True)
class PreparedComparison:
    comparison_id: str
    package_id: str
    version: str
    revision: int
    previous_package_id: str
    previous_version: str
    previous_revision: int
    operation_types: list[dict[str, Any]] = field(default_factory=list)
    refs: list[str] = field(default_factory=list)
    builder_version: str = ""
    changes: list[OperationChange] = field(default_factory=list)


@dataclass(slots=True)
class PreparedComparisons:
    to_write: list[PreparedComparison]
    cached_ids: list[str]
    main_id: str | None


def comparison_not_found(comparison_id: str) -> NotFoundError:
    return NotFoundError(
        "Comparison '$comparisonId' not found",
        code="ComparisonNotFound",
        params={"comparisonId": comparison_id},
    )


def prepare_comparisons(
    comparisons: Sequence[ComparisonInfo],
    *,
    package_id: str,
    version: str,
    revision: int,
    builder_version: str = "",
    extra_cached_ids: Iterable[str] = (),
) -> PreparedComparisons:
    """Address builder comparisons by id and link the main one to its children.

    The comparison whose current side is the published ``package@version``
    (with revision 0 or ``revision``) is the main comparison; every other
    comparison becomes one of its ``refs``. Comparisons flagged
    ``from_cache`` are referenced but not rewritten.
    """
    to_write: list[PreparedComparison] = []
    cached_ids: list[str] = list(dict.fromkeys(extra_cached_ids))
    main: PreparedComparison | None = None
    child_ids: list[str] = []

    for info in comparisons:
        is_main = (
            bool(info.version)
            and info.package_id == package_id
            and info.version == version
            and info.revision in (0, revision)
        )
        prepared = PreparedComparison(
            comparison_id="",
            package_id=info.package_id if info.version else "",
            version=info.version,
            revision=revision if is_main else (info.revision if info.version else 0),
            previous_package_id=info.previous_package_id if info.previous_version else "",
            previous_version=info.previous_version,
            previous_revision=info.previous_revision if info.previous_version else 0,
            operation_types=list(info.operation_types),
            builder_version=builder_version,
            changes=list(info.operation_changes),
        )
        prepared.comparison_id = make_comparison_id(
            prepared.package_id,
            prepared.version,
            prepared.revision,
            prepared.previous_package_id,
            prepared.previous_version,
            prepared.previous_revision,
        )
        if is_main:
            main = prepared
        else:
            child_ids.append(prepared.comparison_id)
        if info.from_cache:
            cached_ids.append(prepared.comparison_id)
            continue
        to_write.append(prepared)

    cached = set(cached_ids)
    to_write = [prepared for prepared in to_write if prepared.comparison_id not in cached]
    if to_write and main is None:
        raise ValidationError(
            "Invalid build result: $error",
            code="InvalidBuildResult",
            params={"error": "comparison for the published version not found"},
        )
    if main is not None:
        linked = dict.fromkeys([*child_ids, *cached_ids])
        main.refs = [cid for cid in linked if cid != main.comparison_id]
    return PreparedComparisons(
        to_write=to_write,
        cached_ids=list(dict.fromkeys(cached_ids)),
        main_id=main.comparison_id if main else None,
    )


def comparison_from_row(row: db_models.VersionComparisonRow) -> VersionComparison:
    return VersionComparison(
        comparison_id=row.comparison_id,
        package_id=row.package_id,
        version=row.version,
        revision=row.revision,
        previous_package_id=row.previous_package_id,
        previous_version=row.previous_version,
        previous_revision=row.previous_revision,
        operation_types=list(row.operation_types or []),
        refs=list(row.refs or []),
        open_count=row.open_count,
        last_active=row.last_active,
        no_content=row.no_content,
        builder_version=row.builder_version,
    )


@dataclass(slots=True)
class ChangelogEngine:
    """Cached version comparisons and the changelog view over them."""

    session: AsyncSession

    async def get_comparison(self, comparison_id: str) -> VersionComparison | None:
        row = await self.session.get(
            db_models.VersionComparisonRow, comparison_id, populate_existing=True
        )
        return comparison_from_row(row) if row else None

    async def get_ref_comparisons(self, comparison_id: str) -> list[VersionComparison]:
        root = await self.get_comparison(comparison_id)
        if root is None:
            raise comparison_not_found(comparison_id)
        if not root.refs:
            return []
        stmt = (
            select(db_models.VersionComparisonRow)
            .where(db_models.VersionComparisonRow.comparison_id.in_(root.refs))
            .order_by(db_models.VersionComparisonRow.package_id)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [comparison_from_row(row) for row in rows]

    async def save_comparisons(self, comparisons: Sequence[PreparedComparison]) -> None:
        """Upsert comparison rows and replace their operation-level diffs.

        Joins the caller's transaction.
        """
        if not comparisons:
            return
        now = utcnow()
        table = db_models.VersionComparisonRow
        for prepared in comparisons:
            stmt = upsert(self.session, table).values(
                comparison_id=prepared.comparison_id,
                package_id=prepared.package_id,
                version=prepared.version,
                revision=prepared.revision,
                previous_package_id=prepared.previous_package_id,
                previous_version=prepared.previous_version,
                previous_revision=prepared.previous_revision,
                operation_types=prepared.operation_types,
                refs=prepared.refs,
                open_count=1,
                last_active=now,
                no_content=False,
                builder_version=prepared.builder_version,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["comparison_id"],
                set_={
                    "operation_types": stmt.excluded.operation_types,
                    "refs": stmt.excluded.refs,
                    "last_active": stmt.excluded.last_active,
                    "no_content": stmt.excluded.no_content,
                    "builder_version": stmt.excluded.builder_version,
                    "open_count": table.open_count + 1,
                },
            )
            await self.session.execute(stmt)

        ids = [prepared.comparison_id for prepared in comparisons]
        await self.session.execute(
            delete(db_models.OperationComparisonRow).where(
                db_models.OperationComparisonRow.comparison_id.in_(ids)
            )
        )
        rows = [
            {
                "comparison_id": prepared.comparison_id,
                "package_id": prepared.package_id,
                "version": prepared.version,
                "revision": prepared.revision,
                "operation_id": change.operation_id,
                "previous_package_id": prepared.previous_package_id,
                "previous_version": prepared.previous_version,
                "previous_revision": prepared.previous_revision,
                "previous_operation_id": change.previous_operation_id,
                "data_hash": change.data_hash,
                "previous_data_hash": change.previous_data_hash,
                "changes_summary": change.change_summary.to_json_dict(),
                "changes": {"changes": change.changes},
                "metadata_": change.metadata,
            }
            for prepared in comparisons
            for change in prepared.changes
        ]
        if rows:
            self.session.add_all(db_models.OperationComparisonRow(**row) for row in rows)
            await self.session.flush()
        logger.info("comparisons_saved", comparisons=len(ids), operation_changes=len(rows))

    async def touch_cached(self, comparison_ids: Sequence[str]) -> None:
        """Mark reused comparisons as active; each must already exist."""
        if not comparison_ids:
            return
        stmt = select(db_models.VersionComparisonRow.comparison_id).where(
            db_models.VersionComparisonRow.comparison_id.in_(list(comparison_ids))
        )
        found = set((await self.session.execute(stmt)).scalars().all())
        missing = [cid for cid in comparison_ids if cid not in found]
        if missing:
            raise ValidationError(
                "Cached comparisons $comparisonIds not found",
                code="CachedComparisonNotFound",
                params={"comparisonIds": missing},
            )
        await self.session.execute(
            update(db_models.VersionComparisonRow)
            .where(db_models.VersionComparisonRow.comparison_id.in_(list(comparison_ids)))
            .values(last_active=utcnow())
        )

    async def get_changelog(self, query: ChangelogQuery) -> list[ChangelogEntry]:
        """Operation changes of a comparison and its child comparisons.

        Breaking changes come first, then deprecations without breaking
        changes, then a stable lexical order.
        """
        root = await self.get_comparison(query.comparison_id)
        if root is None:
            raise comparison_not_found(query.comparison_id)

        comparison_ids = [root.comparison_id, *root.refs]
        stmt = select(db_models.OperationComparisonRow).where(
            db_models.OperationComparisonRow.comparison_id.in_(comparison_ids)
        )
        if query.ref_package_id:
            stmt = stmt.where(
                (db_models.OperationComparisonRow.package_id == query.ref_package_id)
                | (db_models.OperationComparisonRow.previous_package_id == query.ref_package_id)
            )
        rows = list((await self.session.execute(stmt)).scalars().all())
        operations = await self._load_operations(rows)

        entries = [self._make_entry(row, operations) for row in rows]
        entries = [entry for entry in entries if self._matches_columns(entry, query)]
        if query.group or query.empty_group:
            entries = await self._filter_groups(entries, root, query)
        if query.document_slug:
            entries = await self._filter_document(entries, root, query.document_slug)

        entries.sort(key=_changelog_sort_key)
        return entries[query.offset : query.offset + query.limit]

    async def _load_operations(
        self, rows: Sequence[db_models.OperationComparisonRow]
    ) -> dict[tuple[str, str, int, str], db_models.OperationRow]:
        wanted: dict[tuple[str, str, int], set[str]] = defaultdict(set)
        for row in rows:
            if row.operation_id:
                wanted[(row.package_id, row.version, row.revision)].add(row.operation_id)
            if row.previous_operation_id:
                wanted[
                    (row.previous_package_id, row.previous_version, row.previous_revision)
                ].add(row.previous_operation_id)
        found: dict[tuple[str, str, int, str], db_models.OperationRow] = {}
        for (pkg, ver, rev), operation_ids in wanted.items():
            stmt = select(db_models.OperationRow).where(
                db_models.OperationRow.package_id == pkg,
                db_models.OperationRow.version == ver,
                db_models.OperationRow.revision == rev,
                db_models.OperationRow.operation_id.in_(sorted(operation_ids)),
            )
            for operation in (await self.session.execute(stmt)).scalars().all():
                found[(pkg, ver, rev, operation.operation_id)] = operation
        return found

    @staticmethod
    def _make_entry(
        row: db_models.OperationComparisonRow,
        operations: dict[tuple[str, str, int, str], db_models.OperationRow],
    ) -> ChangelogEntry:
        operation = None
        if row.operation_id:
            operation = operations.get((row.package_id, row.version, row.revision, row.operation_id))
        if operation is None and row.previous_operation_id:
            operation = operations.get(
                (
                    row.previous_package_id,
                    row.previous_version,
                    row.previous_revision,
                    row.previous_operation_id,
                )
            )
        return ChangelogEntry(
            comparison_id=row.comparison_id,
            package_id=row.package_id,
            version=row.version,
            revision=row.revision,
            previous_package_id=row.previous_package_id,
            previous_version=row.previous_version,
            previous_revision=row.previous_revision,
            operation_id=row.operation_id,
            previous_operation_id=row.previous_operation_id,
            data_hash=row.data_hash,
            previous_data_hash=row.previous_data_hash,
            api_type=operation.type if operation else "",
            api_kind=operation.kind if operation else "",
            api_audience=operation.api_audience if operation else "",
            title=operation.title if operation else "",
            tags=list(operation.tags or []) if operation else [],
            metadata=dict(operation.metadata_ or {}) if operation else dict(row.metadata_ or {}),
            change_summary=ChangeSummary.model_validate(row.changes_summary or {}),
            changes=list((row.changes or {}).get("changes", [])),
        )

    @staticmethod
    def _matches_columns(entry: ChangelogEntry, query: ChangelogQuery) -> bool:
        if query.text_filter:
            needle = query.text_filter.lower()
            haystack = (
                entry.title,
                str(entry.metadata.get("path", "")),
                str(entry.metadata.get("method", "")),
            )
            if not any(needle in value.lower() for value in haystack):
                return False
        if query.api_type is not None and entry.api_type != query.api_type.value:
            return False
        if query.api_kind and entry.api_kind != query.api_kind:
            return False
        if query.api_audience and query.api_audience != "all" and entry.api_audience != query.api_audience:
            return False
        if query.tags or query.empty_tag:
            tagged = bool(set(entry.tags) & set(query.tags))
            untagged = query.empty_tag and not entry.tags
            if not (tagged or untagged):
                return False
        if query.severities:
            if not any(entry.change_summary.count(severity) > 0 for severity in query.severities):
                return False
        return True

    async def _filter_groups(
        self, entries: list[ChangelogEntry], root: VersionComparison, query: ChangelogQuery
    ) -> list[ChangelogEntry]:
        if query.api_type is None:
            raise ValidationError(
                "Group filters require apiType", code="InvalidChangelogQuery"
            )
        group = db_models.GroupedOperationRow
        stmt = select(group.package_id, group.version, group.revision, group.operation_id, group.group_id)
        if query.group:
            group_id = make_operation_group_id(
                root.package_id, root.version, root.revision, query.api_type.value, query.group
            )
            stmt = stmt.where(group.group_id == group_id)
        else:
            group_ids = select(db_models.OperationGroupRow.group_id).where(
                db_models.OperationGroupRow.package_id == root.package_id,
                db_models.OperationGroupRow.version == root.version,
                db_models.OperationGroupRow.revision == root.revision,
                db_models.OperationGroupRow.api_type == query.api_type.value,
            )
            stmt = stmt.where(group.group_id.in_(group_ids))
        members = {tuple(row[:4]) for row in (await self.session.execute(stmt)).all()}

        def grouped(entry: ChangelogEntry) -> bool:
            return bool(entry.operation_id) and (
                (entry.package_id, entry.version, entry.revision, entry.operation_id) in members
            )

        if query.group:
            return [entry for entry in entries if grouped(entry)]
        return [entry for entry in entries if not grouped(entry)]

    async def _filter_document(
        self, entries: list[ChangelogEntry], root: VersionComparison, slug: str
    ) -> list[ChangelogEntry]:
        document = await VersionStore(self.session).get_document_by_slug(
            root.package_id, root.version, root.revision, slug
        )
        if document is None:
            raise NotFoundError(
                "Document '$slug' not found in $version",
                code="PublishedFileNotFound",
                params={"slug": slug, "version": f"{root.version}@{root.revision}"},
            )
        operation_ids = set(document.operation_ids)
        return [
            entry
            for entry in entries
            if entry.operation_id in operation_ids or entry.previous_operation_id in operation_ids
        ]


def _changelog_sort_key(entry: ChangelogEntry) -> tuple[Any, ...]:
    breaking = entry.change_summary.count(Severity.breaking) > 0
    deprecated_only = entry.change_summary.count(Severity.deprecated) > 0 and not breaking
    return (
        not breaking,
        not deprecated_only,
        entry.package_id,
        entry.version,
        entry.revision,
        entry.operation_id,
        entry.data_hash,
    )
