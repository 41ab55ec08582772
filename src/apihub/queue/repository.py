from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from uuid import uuid4

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, exists, not_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from apihub.config import Settings
from apihub.core.errors import (
    ForbiddenError,
    ValidationError,
    build_already_finished,
    build_not_found,
    build_sources_not_found,
)
from apihub.db import models as db_models
from apihub.db.models import utcnow
from apihub.db.statements import lock_row, lock_rows
from apihub.domain.models import (
    Build,
    BuildConfig,
    BuildSource,
    BuildStatus,
    BuildSubmission,
    BuildType,
    ChangelogBuildSearch,
    DocumentGroupBuildSearch,
    TERMINAL_BUILD_STATUSES,
)

logger = structlog.get_logger()

RESTART_LIMIT_DETAILS = "Restart count exceeded limit. Details: {details}"
DEPENDENCY_FAILED_DETAILS = "Dependency build '{build_id}' failed"
SOURCES_NOT_FOUND_DETAILS = "BE error: sources not found during findFreeBuild"


def build_from_row(row: db_models.BuildRow) -> Build:
    return Build(
        build_id=row.build_id,
        package_id=row.package_id,
        version=row.version,
        status=BuildStatus(row.status),
        details=row.details,
        priority=row.priority,
        restart_count=row.restart_count,
        builder_id=row.builder_id,
        created_by=row.created_by,
        created_at=row.created_at,
        last_active=row.last_active,
    )


def parse_build_config(raw: dict[str, Any]) -> BuildConfig:
    try:
        return BuildConfig.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Build config has invalid format: $error",
            code="InvalidBuildConfig",
            params={"error": exc.errors(include_url=False)[0]["msg"]},
            debug=str(exc),
        ) from exc


def accumulate_details(previous: str, new: str) -> str:
    if previous and new:
        return f"{previous}: {new}"
    return previous or new


@dataclass(slots=True)
class BuildQueue:
    """Persistent build queue on top of the ``build`` tables.

    The row itself is the lease: ``status=running`` plus a fresh
    ``last_active``. A lease expires once ``last_active`` is older than the
    keepalive timeout, or immediately when a retriable failure releases it
    (``builder_id`` cleared while still ``running``).
    """

    session: AsyncSession
    keepalive_timeout: timedelta = timedelta(seconds=600)
    restart_limit: int = 2

    @classmethod
    def from_settings(cls, session: AsyncSession, settings: Settings) -> "BuildQueue":
        return cls(
            session,
            keepalive_timeout=timedelta(seconds=settings.build_keepalive_timeout_sec),
            restart_limit=settings.build_restart_limit,
        )

    # Submission

    async def submit(self, submission: BuildSubmission, *, deduplicate: bool = True) -> str:
        """Enqueue a build with its source bundle and prerequisites in one transaction.

        Changelog and document-group submissions that match a build already
        queued or finished successfully return that build's id instead.
        """
        config = submission.config
        if config.package_id != submission.package_id:
            raise ValidationError(
                "Build config packageId '$configPackageId' does not match '$packageId'",
                code="InvalidBuildConfig",
                params={"configPackageId": config.package_id, "packageId": submission.package_id},
            )
        if deduplicate:
            existing = await self._find_duplicate(config)
            if existing is not None and existing.status != BuildStatus.error:
                logger.info(
                    "build_submission_deduplicated",
                    build_id=existing.build_id,
                    package_id=submission.package_id,
                )
                return existing.build_id

        build_id = str(uuid4())
        now = utcnow()
        try:
            self.session.add(
                db_models.BuildRow(
                    build_id=build_id,
                    package_id=submission.package_id,
                    version=config.version,
                    status=BuildStatus.none.value,
                    details="",
                    priority=submission.priority,
                    restart_count=0,
                    created_by=submission.created_by or config.created_by,
                    created_at=now,
                    last_active=now,
                )
            )
            await self.session.flush()
            self.session.add(
                db_models.BuildSourceRow(
                    build_id=build_id, source=submission.source, config=config.to_json_dict()
                )
            )
            for depend_id in dict.fromkeys(submission.depends):
                self.session.add(db_models.BuildDependencyRow(build_id=build_id, depend_id=depend_id))
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "build_submitted",
            build_id=build_id,
            package_id=submission.package_id,
            version=config.version,
            build_type=config.build_type.value,
            priority=submission.priority,
            depends=len(submission.depends),
        )
        return build_id

    # Reads

    async def get_build(self, build_id: str) -> Build:
        row = await self.session.get(db_models.BuildRow, build_id, populate_existing=True)
        if row is None:
            raise build_not_found(build_id)
        return build_from_row(row)

    async def get_source(self, build_id: str) -> BuildSource:
        row = await self.session.get(db_models.BuildSourceRow, build_id, populate_existing=True)
        if row is None:
            raise build_sources_not_found(build_id)
        return BuildSource(build_id=build_id, source=row.source, config=parse_build_config(row.config))

    async def get_dependencies(self, build_id: str) -> list[str]:
        stmt = (
            select(db_models.BuildDependencyRow.depend_id)
            .where(db_models.BuildDependencyRow.build_id == build_id)
            .order_by(db_models.BuildDependencyRow.depend_id)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def find_by_changelog_key(self, query: ChangelogBuildSearch) -> Build | None:
        config = db_models.BuildSourceRow.config
        return await self._latest_matching(
            config["version"].as_string() == query.version,
            config["packageId"].as_string() == query.package_id,
            config["previousVersionPackageId"].as_string() == query.previous_version_package_id,
            config["previousVersion"].as_string() == query.previous_version,
            config["buildType"].as_string() == query.build_type.value,
            config["comparisonRevision"].as_integer() == query.comparison_revision,
            config["comparisonPrevRevision"].as_integer() == query.comparison_prev_revision,
        )

    async def find_by_document_group_key(self, query: DocumentGroupBuildSearch) -> Build | None:
        config = db_models.BuildSourceRow.config
        return await self._latest_matching(
            config["version"].as_string() == query.version,
            config["packageId"].as_string() == query.package_id,
            config["buildType"].as_string() == query.build_type.value,
            config["format"].as_string() == query.format,
            config["apiType"].as_string() == query.api_type,
            config["groupName"].as_string() == query.group_name,
        )

    # Worker protocol

    async def take_free_build(self, builder_id: str) -> Build | None:
        """Lease the best eligible build to ``builder_id``.

        Candidates that already used up their restarts are failed on the way
        and the search continues, so poisoned builds drain without help. The
        lease is written as a compare-and-set against the row that was read;
        a taker that loses the race selects again.
        """
        while True:
            try:
                row = await self._select_eligible()
                if row is None:
                    await self.session.commit()
                    return None

                first_run = row.status == BuildStatus.none.value
                if not first_run and row.restart_count >= self.restart_limit:
                    if not await self._claim(
                        row,
                        status=BuildStatus.error.value,
                        details=RESTART_LIMIT_DETAILS.format(details=row.details),
                        last_active=utcnow(),
                    ):
                        await self.session.rollback()
                        continue
                    await self._fail_dependents(row.build_id)
                    await self.session.refresh(row)
                    poisoned = build_from_row(row)
                    await self.session.commit()
                    logger.warning(
                        "build_poisoned",
                        build_id=poisoned.build_id,
                        restart_count=poisoned.restart_count,
                        details=poisoned.details,
                    )
                    continue

                if not await self._claim(
                    row,
                    status=BuildStatus.running.value,
                    builder_id=builder_id,
                    restart_count=row.restart_count if first_run else row.restart_count + 1,
                    last_active=utcnow(),
                ):
                    await self.session.rollback()
                    logger.debug(
                        "build_lease_contended", build_id=row.build_id, builder_id=builder_id
                    )
                    continue
                await self.session.refresh(row)
                leased = build_from_row(row)
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise

            logger.info(
                "build_leased",
                build_id=leased.build_id,
                builder_id=builder_id,
                restart_count=leased.restart_count,
                first_run=first_run,
            )
            return leased

    async def update_status(
        self,
        build_id: str,
        status: BuildStatus,
        details: str = "",
        *,
        builder_id: str | None = None,
    ) -> Build:
        """Apply a worker-reported status change under the row lock.

        ``complete`` is final. ``error`` only accepts further ``error`` reports,
        whose details are appended. A failure reported on a build that still
        has restarts left releases the lease instead of ending the build.
        Only the lease holder may report ``running``.
        """
        try:
            row = await self._lock_build(build_id)
            current = BuildStatus(row.status)
            if current == BuildStatus.complete:
                raise build_already_finished(build_id)
            if current == BuildStatus.error and status != BuildStatus.error:
                raise build_already_finished(build_id)
            if builder_id is not None and BuildStatus.running in (current, status):
                self._check_owner(row, builder_id)

            now = utcnow()
            if status == BuildStatus.error and current != BuildStatus.error:
                row.details = accumulate_details(row.details, details)
                if row.restart_count < self.restart_limit:
                    # Lease released: eligible again at once, counted as a restart.
                    row.status = BuildStatus.running.value
                    row.builder_id = None
                    logger.warning(
                        "build_attempt_failed",
                        build_id=build_id,
                        restart_count=row.restart_count,
                        details=details,
                    )
                else:
                    row.status = BuildStatus.error.value
                    await self._fail_dependents(build_id)
                    logger.error("build_failed", build_id=build_id, details=row.details)
            elif status == BuildStatus.error:
                if row.restart_count >= self.restart_limit and details:
                    row.details = accumulate_details(row.details, details)
            else:
                row.status = status.value
                if status == BuildStatus.complete:
                    row.details = ""
                elif details:
                    row.details = details
            row.last_active = now
            updated = build_from_row(row)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return updated

    async def fail(self, build_id: str, details: str) -> Build:
        """End a build that no retry can fix, regardless of restarts left."""
        try:
            row = await self._lock_build(build_id)
            if row.status in TERMINAL_BUILD_STATUSES:
                raise build_already_finished(build_id)
            row.status = BuildStatus.error.value
            row.details = details
            row.last_active = utcnow()
            await self._fail_dependents(build_id)
            failed = build_from_row(row)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        logger.error("build_failed", build_id=build_id, details=details)
        return failed

    async def heartbeat(self, build_id: str, builder_id: str) -> None:
        """Refresh the lease while the builder is still working."""
        await self.update_status(build_id, BuildStatus.running, "", builder_id=builder_id)

    async def validate_ownership(self, build_id: str, builder_id: str) -> Build:
        row = await self.session.get(db_models.BuildRow, build_id, populate_existing=True)
        if row is None:
            raise build_not_found(build_id)
        self._check_owner(row, builder_id)
        return build_from_row(row)

    async def lock_for_publish(
        self, build_id: str, builder_id: str | None = None
    ) -> db_models.BuildRow:
        """Hold the build row for the rest of the caller's transaction.

        A complete build is never committed twice; an errored build is
        refused while it still has restarts left.
        """
        row = await self._lock_build(build_id)
        current = BuildStatus(row.status)
        if current == BuildStatus.complete:
            raise build_already_finished(build_id)
        if current == BuildStatus.error and row.restart_count < self.restart_limit:
            raise build_already_finished(build_id)
        if builder_id is not None:
            self._check_owner(row, builder_id)
        return row

    async def update_source_config(self, build_id: str, config: BuildConfig) -> None:
        result = await self.session.execute(
            update(db_models.BuildSourceRow)
            .where(db_models.BuildSourceRow.build_id == build_id)
            .values(config=config.to_json_dict())
        )
        if result.rowcount == 0:  # type: ignore[attr-defined]
            await self.session.rollback()
            raise build_sources_not_found(build_id)
        await self.session.commit()

    async def store_result(self, build_id: str, data: bytes) -> None:
        """Keep the raw builder output next to the build (reaped by retention)."""
        row = await self.session.get(db_models.BuildResultRow, build_id)
        if row is None:
            self.session.add(db_models.BuildResultRow(build_id=build_id, data=data))
        else:
            row.data = data
        await self.session.flush()

    async def get_result(self, build_id: str) -> bytes | None:
        row = await self.session.get(db_models.BuildResultRow, build_id, populate_existing=True)
        return row.data if row else None

    # Internals

    async def _select_eligible(self) -> db_models.BuildRow | None:
        build = db_models.BuildRow
        prerequisite = aliased(db_models.BuildRow)
        stale_before = utcnow() - self.keepalive_timeout

        unfinished_prerequisite = exists().where(
            db_models.BuildDependencyRow.build_id == build.build_id,
            not_(
                exists().where(
                    prerequisite.build_id == db_models.BuildDependencyRow.depend_id,
                    prerequisite.status == BuildStatus.complete.value,
                )
            ),
        )
        stmt = (
            select(build)
            .where(
                or_(
                    build.status == BuildStatus.none.value,
                    and_(
                        build.status == BuildStatus.running.value,
                        or_(build.last_active < stale_before, build.builder_id.is_(None)),
                    ),
                ),
                not_(unfinished_prerequisite),
            )
            .order_by(build.priority.desc(), build.created_at.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(lock_rows(stmt))
        return result.scalar_one_or_none()

    async def _claim(self, row: db_models.BuildRow, **values: Any) -> bool:
        """Write ``values`` only if the build still looks the way ``row`` saw it."""
        build = db_models.BuildRow
        seen_builder = (
            build.builder_id.is_(None) if row.builder_id is None else build.builder_id == row.builder_id
        )
        stmt = (
            update(build)
            .where(
                build.build_id == row.build_id,
                build.status == row.status,
                build.restart_count == row.restart_count,
                build.last_active == row.last_active,
                seen_builder,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def _lock_build(self, build_id: str) -> db_models.BuildRow:
        stmt = (
            select(db_models.BuildRow)
            .where(db_models.BuildRow.build_id == build_id)
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(lock_row(stmt))).scalar_one_or_none()
        if row is None:
            raise build_not_found(build_id)
        return row

    def _check_owner(self, row: db_models.BuildRow, builder_id: str) -> None:
        if row.builder_id != builder_id:
            raise ForbiddenError(
                "Build '$buildId' is leased by another builder",
                code="BuildNotOwned",
                params={"buildId": row.build_id, "builderId": builder_id},
            )

    async def _fail_dependents(self, build_id: str) -> None:
        """Fail queued builds that can no longer run because ``build_id`` failed."""
        pending = [build_id]
        while pending:
            failed = pending.pop()
            stmt = (
                select(db_models.BuildRow)
                .join(
                    db_models.BuildDependencyRow,
                    db_models.BuildDependencyRow.build_id == db_models.BuildRow.build_id,
                )
                .where(
                    db_models.BuildDependencyRow.depend_id == failed,
                    db_models.BuildRow.status == BuildStatus.none.value,
                )
            )
            for dependent in (await self.session.execute(stmt)).scalars().all():
                dependent.status = BuildStatus.error.value
                dependent.details = DEPENDENCY_FAILED_DETAILS.format(build_id=failed)
                dependent.last_active = utcnow()
                pending.append(dependent.build_id)
                logger.warning(
                    "build_dependency_failed", build_id=dependent.build_id, depend_id=failed
                )

    async def _latest_matching(self, *conditions: Any) -> Build | None:
        stmt = (
            select(db_models.BuildRow)
            .join(
                db_models.BuildSourceRow,
                db_models.BuildSourceRow.build_id == db_models.BuildRow.build_id,
            )
            .where(*conditions)
            .order_by(db_models.BuildRow.created_at.desc())
            .limit(1)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return build_from_row(row) if row else None

    async def _find_duplicate(self, config: BuildConfig) -> Build | None:
        if config.build_type == BuildType.changelog:
            return await self.find_by_changelog_key(
                ChangelogBuildSearch(
                    package_id=config.package_id,
                    version=config.version,
                    previous_version_package_id=config.previous_version_package_id,
                    previous_version=config.previous_version,
                    comparison_revision=config.comparison_revision,
                    comparison_prev_revision=config.comparison_prev_revision,
                )
            )
        if config.build_type == BuildType.document_group:
            return await self.find_by_document_group_key(
                DocumentGroupBuildSearch(
                    package_id=config.package_id,
                    version=config.version,
                    format=config.format,
                    api_type=config.api_type,
                    group_name=config.group_name,
                )
            )
        return None
