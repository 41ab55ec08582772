"""Atomic commit of a builder's result into the content and version stores.

Every step joins one database transaction that also holds the build row
lock. Any failure rolls the whole publish back, so readers observe either
the complete revision or nothing.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.changelog.engine import ChangelogEngine, prepare_comparisons
from apihub.config import Settings, get_settings
from apihub.content.store import ContentStore, PutOutcome
from apihub.core.errors import (
    ConflictError,
    ValidationError,
    package_not_found,
    revision_missing,
    version_not_found,
)
from apihub.db import models as db_models
from apihub.db.models import utcnow
from apihub.db.statements import lock_row, share_rows, upsert
from apihub.domain.identifiers import format_version_revision, workspace_id
from apihub.domain.models import (
    PUBLISHING_BUILD_TYPES,
    ApiType,
    BuildConfig,
    BuildResult,
    BuildStatus,
    BuildType,
    OperationData,
    Revision,
)
from apihub.publish.audit import collect_migration_changes
from apihub.publish.search_scope import refresh_search_rows
from apihub.publish.validation import (
    invalid_result,
    missing_blob_checksums,
    missing_operation_hashes,
    validate_result,
)
from apihub.queue.repository import BuildQueue
from apihub.versions.groups import OperationGroupStore
from apihub.versions.store import RevisionKey, VersionStore

logger = structlog.get_logger()


def reference_cycle(package_id: str, version: str, revision: int) -> ValidationError:
    return ValidationError(
        "References of $version introduce a cycle",
        code="ReferenceCycle",
        params={"version": f"{package_id}:{format_version_revision(version, revision)}"},
    )


def _naive_utc(value: datetime | None) -> datetime:
    if value is None:
        return utcnow()
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_build_result(payload: bytes) -> BuildResult:
    try:
        return BuildResult.model_validate_json(payload)
    except PydanticValidationError as exc:
        raise invalid_result(exc.errors(include_url=False)[0]["msg"]) from exc


@dataclass(slots=True)
class PublishTransaction:
    """Commits build results. One instance per session."""

    session: AsyncSession
    settings: Settings

    @classmethod
    def for_session(
        cls, session: AsyncSession, settings: Settings | None = None
    ) -> "PublishTransaction":
        return cls(session, settings or get_settings())

    @property
    def queue(self) -> BuildQueue:
        return BuildQueue.from_settings(self.session, self.settings)

    async def commit_result(
        self, build_id: str, payload: bytes, *, builder_id: str | None = None
    ) -> Revision | None:
        """Route a serialized builder result by the build's type."""
        config = (await self.queue.get_source(build_id)).config
        if config.build_type in PUBLISHING_BUILD_TYPES:
            result = parse_build_result(payload)
            return await self.publish(build_id, result, builder_id=builder_id, raw_result=payload)
        if config.build_type == BuildType.changelog:
            result = parse_build_result(payload)
            await self.commit_changelog(build_id, result, builder_id=builder_id, raw_result=payload)
            return None
        await self.complete_with_result(build_id, payload, builder_id=builder_id)
        return None

    async def publish(
        self,
        build_id: str,
        result: BuildResult,
        *,
        builder_id: str | None = None,
        raw_result: bytes | None = None,
    ) -> Revision:
        """Commit ``result`` as a new revision and complete the build."""
        started = time.monotonic()
        log = logger.bind(build_id=build_id, package_id=result.version.package_id)
        try:
            build_row = await self.queue.lock_for_publish(build_id, builder_id)
            config = (await self.queue.get_source(build_id)).config
            validate_result(config, result)
            package_row = await self._lock_package(result.version.package_id)
            revision = await self._assign_revision(config, result)
            key: RevisionKey = (result.version.package_id, result.version.version, revision)
            await self._check_references(key, result)
            await self._audit_migration(build_id, config, result, revision)
            await self._store_version(key, config, result)

            await self._store_blobs(key, result)
            await self._store_documents(key, result)
            await self._store_references(key, result)
            await self._store_sources(key, config, result)
            changed = await self._store_operation_data(result)
            await self._store_operations(key, config, result)
            await self._refresh_search(result, changed)
            await self._store_comparisons(key, config, result)
            await self._store_notifications(build_id, result)
            if not config.migration_build:
                await self._propagate_groups(key, package_row, config, result)
            await self._bind_service(package_row, config, result)
            await self._complete_build(build_row, raw_result)

            await self.session.commit()
        except Exception as exc:
            await self.session.rollback()
            log.error("publish_failed", error=str(exc), error_type=type(exc).__name__)
            raise

        log.info(
            "publish_committed",
            version=format_version_revision(key[1], revision),
            documents=len(result.documents),
            operations=len(result.operations),
            changed_operation_data=len(changed),
            migration=config.migration_build,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
        committed = await VersionStore(self.session).get_revision(*key)
        if committed is None:
            raise revision_missing(key[0], format_version_revision(key[1], revision))
        return committed

    async def commit_changelog(
        self,
        build_id: str,
        result: BuildResult,
        *,
        builder_id: str | None = None,
        raw_result: bytes | None = None,
    ) -> str | None:
        """Store the comparisons of a changelog-only build; returns the main comparison id."""
        try:
            build_row = await self.queue.lock_for_publish(build_id, builder_id)
            config = (await self.queue.get_source(build_id)).config
            revision = config.comparison_revision
            if revision == 0:
                revision = await VersionStore(self.session).get_latest_revision(
                    config.package_id, config.version
                )
                if revision == 0:
                    raise version_not_found(config.package_id, config.version)
            prepared = prepare_comparisons(
                result.comparisons,
                package_id=config.package_id,
                version=config.version,
                revision=revision,
                builder_version=result.version.builder_version,
                extra_cached_ids=result.cached_comparison_ids,
            )
            changelog = ChangelogEngine(self.session)
            await changelog.save_comparisons(prepared.to_write)
            await changelog.touch_cached(prepared.cached_ids)
            await self._store_notifications(build_id, result)
            await self._complete_build(build_row, raw_result)
            await self.session.commit()
        except Exception as exc:
            await self.session.rollback()
            logger.error("changelog_commit_failed", build_id=build_id, error=str(exc))
            raise
        logger.info(
            "changelog_committed",
            build_id=build_id,
            comparison_id=prepared.main_id,
            written=len(prepared.to_write),
            cached=len(prepared.cached_ids),
        )
        return prepared.main_id

    async def complete_with_result(
        self, build_id: str, payload: bytes, *, builder_id: str | None = None
    ) -> None:
        """Keep the output of an export-style build and complete it."""
        try:
            build_row = await self.queue.lock_for_publish(build_id, builder_id)
            await self._complete_build(build_row, payload)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        logger.info("build_result_stored", build_id=build_id, size=len(payload))

    # Preparation

    async def _lock_package(self, package_id: str) -> db_models.PackageRow:
        stmt = select(db_models.PackageRow).where(
            db_models.PackageRow.id == package_id,
            db_models.PackageRow.deleted_at.is_(None),
        ).execution_options(populate_existing=True)
        row = (await self.session.execute(lock_row(stmt))).scalar_one_or_none()
        if row is None:
            raise package_not_found(package_id)
        return row

    async def _assign_revision(self, config: BuildConfig, result: BuildResult) -> int:
        if config.migration_build:
            return config.revision
        info = result.version
        revision = await VersionStore(self.session).next_revision_number(
            info.package_id, info.version
        )
        if info.revision not in (0, revision):
            raise ConflictError(
                "Revision $revision of $version was already assigned; next is $next",
                code="RevisionConflict",
                params={"revision": info.revision, "version": info.version, "next": revision},
            )
        return revision

    async def _check_references(self, key: RevisionKey, result: BuildResult) -> None:
        versions = VersionStore(self.session)
        for ref in result.references:
            target = (ref.ref_package_id, ref.ref_version, ref.ref_revision)
            if target == key:
                raise reference_cycle(*key)
            if await versions.get_revision(*target) is None:
                raise version_not_found(
                    ref.ref_package_id, format_version_revision(ref.ref_version, ref.ref_revision)
                )
            if ref.excluded:
                continue
            if key in await versions.transitive_refs(*target):
                raise reference_cycle(*key)

    async def _audit_migration(
        self, build_id: str, config: BuildConfig, result: BuildResult, revision: int
    ) -> None:
        if not (config.migration_build and self.settings.migration_audit_enabled):
            return
        changes, overview = await collect_migration_changes(self.session, result, revision)
        if not changes:
            return
        self.session.add(
            db_models.MigratedVersionChangesRow(
                package_id=result.version.package_id,
                version=result.version.version,
                revision=revision,
                build_id=build_id,
                migration_id=config.migration_id,
                changes=changes,
                changes_overview=overview,
            )
        )

    async def _store_version(
        self, key: RevisionKey, config: BuildConfig, result: BuildResult
    ) -> None:
        package_id, version, revision = key
        info = result.version
        previous_version = info.previous_version or None
        previous_package_id = None
        if previous_version:
            previous_package_id = info.previous_version_package_id or package_id
        metadata = dict(info.metadata)
        if info.builder_version:
            metadata["builderVersion"] = info.builder_version
        if config.publish_id:
            metadata["publishId"] = config.publish_id
        await self.session.merge(
            db_models.PublishedVersionRow(
                package_id=package_id,
                version=version,
                revision=revision,
                status=info.status.value,
                labels=list(info.labels),
                previous_version=previous_version,
                previous_version_package_id=previous_package_id,
                metadata_=metadata,
                published_at=_naive_utc(info.published_at or config.published_at),
                created_by=info.created_by or config.created_by,
                deleted_at=None,
                deleted_by=None,
            )
        )
        await self.session.flush()

    # Commit steps

    async def _store_blobs(self, key: RevisionKey, result: BuildResult) -> None:
        content = ContentStore(self.session)
        package_id = key[0]
        stored = 0
        for blob in {blob.checksum: blob for blob in result.document_blobs}.values():
            outcome = await content.put_blob(package_id, blob.checksum, blob.media_type, blob.data)
            stored += outcome == PutOutcome.stored
        for checksum in sorted(missing_blob_checksums(result)):
            if await content.get_blob_media_type(package_id, checksum) is None:
                raise invalid_result(f"no content for document checksum '{checksum}'")
        logger.debug("publish_blobs_stored", stored=stored, total=len(result.document_blobs))

    async def _store_documents(self, key: RevisionKey, result: BuildResult) -> None:
        package_id, version, revision = key
        for index, doc in enumerate(result.documents):
            await self.session.merge(
                db_models.PublishedContentRow(
                    package_id=package_id,
                    version=version,
                    revision=revision,
                    file_id=doc.file_id,
                    checksum=doc.checksum,
                    index=index,
                    slug=doc.slug,
                    media_type=doc.media_type,
                    title=doc.title,
                    data_type=doc.type,
                    format=doc.format,
                    filename=doc.filename,
                    description=doc.description,
                    operation_ids=list(doc.operation_ids),
                    metadata_=dict(doc.metadata),
                )
            )
        await self.session.flush()

    async def _store_references(self, key: RevisionKey, result: BuildResult) -> None:
        package_id, version, revision = key
        for ref in result.references:
            stmt = upsert(self.session, db_models.PublishedReferenceRow).values(
                package_id=package_id,
                version=version,
                revision=revision,
                reference_id=ref.ref_package_id,
                reference_version=ref.ref_version,
                reference_revision=ref.ref_revision,
                parent_reference_id=ref.parent_package_id,
                parent_reference_version=ref.parent_version,
                parent_reference_revision=ref.parent_revision,
                excluded=ref.excluded,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[
                    "package_id",
                    "version",
                    "revision",
                    "reference_id",
                    "reference_version",
                    "reference_revision",
                    "parent_reference_id",
                    "parent_reference_version",
                    "parent_reference_revision",
                ],
                set_={"excluded": stmt.excluded.excluded},
            )
            await self.session.execute(stmt)

    async def _store_sources(
        self, key: RevisionKey, config: BuildConfig, result: BuildResult
    ) -> None:
        archive = result.source_archive
        if archive is None:
            return
        content = ContentStore(self.session)
        await content.put_source_archive(archive.checksum, archive.data)
        await content.bind_version_sources(*key, archive.checksum, config.to_json_dict())

    async def _store_operation_data(self, result: BuildResult) -> list[OperationData]:
        """Write operation bodies whose search scope changed; returns those written."""
        unique = {data.data_hash: data for data in result.operation_data}
        stored: dict[str, Any] = {}
        if unique:
            # Reused rows stay locked against retention until this revision commits.
            rows = await self.session.execute(
                share_rows(
                    select(
                        db_models.OperationDataRow.data_hash,
                        db_models.OperationDataRow.search_scope,
                    ).where(db_models.OperationDataRow.data_hash.in_(list(unique)))
                )
            )
            stored = dict(rows.all())

        changed: list[OperationData] = []
        for data_hash, data in unique.items():
            if data_hash in stored and stored[data_hash] == data.search_scope:
                continue
            stmt = upsert(self.session, db_models.OperationDataRow).values(
                data_hash=data_hash, data=data.data, search_scope=data.search_scope
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["data_hash"],
                set_={"data": stmt.excluded.data, "search_scope": stmt.excluded.search_scope},
            )
            await self.session.execute(stmt)
            changed.append(data)

        missing = sorted(missing_operation_hashes(result))
        if missing:
            found = set(
                (
                    await self.session.execute(
                        select(db_models.OperationDataRow.data_hash).where(
                            db_models.OperationDataRow.data_hash.in_(missing)
                        )
                    )
                )
                .scalars()
                .all()
            )
            absent = [data_hash for data_hash in missing if data_hash not in found]
            if absent:
                raise invalid_result(f"no operation data for hashes {absent}")
        return changed

    async def _store_operations(
        self, key: RevisionKey, config: BuildConfig, result: BuildResult
    ) -> None:
        package_id, version, revision = key
        if config.migration_build:
            await self.session.execute(
                delete(db_models.OperationRow).where(
                    db_models.OperationRow.package_id == package_id,
                    db_models.OperationRow.version == version,
                    db_models.OperationRow.revision == revision,
                )
            )
        self.session.add_all(
            db_models.OperationRow(
                package_id=package_id,
                version=version,
                revision=revision,
                operation_id=op.operation_id,
                data_hash=op.data_hash,
                type=op.api_type.value,
                title=op.title,
                deprecated=op.deprecated,
                kind=op.api_kind,
                api_audience=op.api_audience,
                metadata_=dict(op.metadata),
                models=dict(op.models),
                tags=list(op.tags),
                deprecated_info=op.deprecated_info,
                deprecated_items=list(op.deprecated_items),
                previous_release_versions=list(op.previous_release_versions),
            )
            for op in result.operations
        )
        await self.session.flush()

    async def _refresh_search(self, result: BuildResult, changed: list[OperationData]) -> None:
        api_types: dict[str, ApiType] = {op.data_hash: op.api_type for op in result.operations}
        for data in changed:
            api_type = api_types.get(data.data_hash)
            if api_type is None:
                continue
            await refresh_search_rows(
                self.session,
                data.data_hash,
                api_type,
                data.search_scope,
                text_config=self.settings.search_text_config,
            )

    async def _store_comparisons(
        self, key: RevisionKey, config: BuildConfig, result: BuildResult
    ) -> None:
        if config.no_changelog or result.version.no_changelog:
            return
        if not result.comparisons and not result.cached_comparison_ids:
            return
        package_id, version, revision = key
        prepared = prepare_comparisons(
            result.comparisons,
            package_id=package_id,
            version=version,
            revision=revision,
            builder_version=result.version.builder_version,
            extra_cached_ids=result.cached_comparison_ids,
        )
        changelog = ChangelogEngine(self.session)
        await changelog.save_comparisons(prepared.to_write)
        await changelog.touch_cached(prepared.cached_ids)

    async def _store_notifications(self, build_id: str, result: BuildResult) -> None:
        self.session.add_all(
            db_models.BuilderNotificationRow(
                build_id=build_id,
                severity=note.severity,
                message=note.message,
                file_id=note.file_id,
            )
            for note in result.notifications
        )
        await self.session.flush()

    async def _propagate_groups(
        self,
        key: RevisionKey,
        package_row: db_models.PackageRow,
        config: BuildConfig,
        result: BuildResult,
    ) -> None:
        groups = OperationGroupStore(self.session)
        user_id = result.version.created_by or config.created_by
        await groups.propagate_previous_groups(
            key,
            previous_version=result.version.previous_version or None,
            previous_package_id=result.version.previous_version_package_id or None,
            user_id=user_id,
        )
        await groups.recalculate_autogenerated(
            key,
            rest_grouping_prefix=package_row.rest_grouping_prefix,
            graphql_grouping_prefix=package_row.graphql_grouping_prefix,
            user_id=user_id,
        )

    async def _bind_service(
        self, package_row: db_models.PackageRow, config: BuildConfig, result: BuildResult
    ) -> None:
        service_name = result.service_name or config.service_name
        if not service_name:
            return
        package_row.service_name = service_name
        stmt = (
            upsert(self.session, db_models.PackageServiceRow)
            .values(
                workspace_id=workspace_id(package_row.id),
                package_id=package_row.id,
                service_name=service_name,
            )
            .on_conflict_do_nothing(index_elements=["workspace_id", "package_id", "service_name"])
        )
        await self.session.execute(stmt)

    async def _complete_build(
        self, build_row: db_models.BuildRow, raw_result: bytes | None
    ) -> None:
        if raw_result is not None:
            await self.queue.store_result(build_row.build_id, raw_result)
        build_row.status = BuildStatus.complete.value
        build_row.details = ""
        build_row.last_active = utcnow()
        await self.session.flush()
