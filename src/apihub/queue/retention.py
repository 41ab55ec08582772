from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import Exists, and_, delete, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.config import Settings
from apihub.db import models as db_models
from apihub.db.models import utcnow
from apihub.db.statements import claim_rows_for_delete
from apihub.domain.models import BuildStatus

logger = structlog.get_logger()


@dataclass(slots=True)
class RetentionReport:
    run_id: int
    build_src: int
    build_result: int
    operation_data: int


@dataclass(slots=True)
class BuildRetention:
    """Reaps payloads of finished builds and operation data no live revision uses."""

    session: AsyncSession
    success_retention: timedelta = timedelta(hours=168)
    failure_retention: timedelta = timedelta(hours=336)

    @classmethod
    def from_settings(cls, session: AsyncSession, settings: Settings) -> "BuildRetention":
        return cls(
            session,
            success_retention=timedelta(hours=settings.build_success_retention_hours),
            failure_retention=timedelta(hours=settings.build_failure_retention_hours),
        )

    async def run(self, now: datetime | None = None) -> RetentionReport:
        now = now or utcnow()
        build = db_models.BuildRow
        expired = select(build.build_id).where(
            or_(
                and_(
                    build.status == BuildStatus.complete.value,
                    build.last_active < now - self.success_retention,
                ),
                and_(
                    build.status == BuildStatus.error.value,
                    build.last_active < now - self.failure_retention,
                ),
            )
        )
        try:
            sources = await self.session.execute(
                delete(db_models.BuildSourceRow)
                .where(db_models.BuildSourceRow.build_id.in_(expired))
                .execution_options(synchronize_session=False)
            )
            results = await self.session.execute(
                delete(db_models.BuildResultRow)
                .where(db_models.BuildResultRow.build_id.in_(expired))
                .execution_options(synchronize_session=False)
            )
            operation_data = await self._reap_operation_data()
            run = db_models.BuildCleanupRunRow(
                scheduled_at=now,
                build_src=sources.rowcount,  # type: ignore[attr-defined]
                build_result=results.rowcount,  # type: ignore[attr-defined]
                operation_data=operation_data,
            )
            self.session.add(run)
            await self.session.flush()
            report = RetentionReport(
                run_id=run.run_id,
                build_src=run.build_src,
                build_result=run.build_result,
                operation_data=run.operation_data,
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "retention_completed",
            run_id=report.run_id,
            build_src=report.build_src,
            build_result=report.build_result,
            operation_data=report.operation_data,
        )
        return report

    def _live_operation(self) -> Exists:
        """Correlated check for an operation of an undeleted revision using the data row."""
        operation = db_models.OperationRow
        version = db_models.PublishedVersionRow
        data = db_models.OperationDataRow
        return (
            select(operation.data_hash)
            .join(
                version,
                and_(
                    version.package_id == operation.package_id,
                    version.version == operation.version,
                    version.revision == operation.revision,
                ),
            )
            .where(operation.data_hash == data.data_hash, version.deleted_at.is_(None))
            .correlate(data)
            .exists()
        )

    async def _orphaned_operation_data(self) -> list[str]:
        data = db_models.OperationDataRow
        stmt = claim_rows_for_delete(select(data.data_hash).where(~self._live_operation()))
        return list((await self.session.execute(stmt)).scalars().all())

    async def _reap_operation_data(self) -> int:
        orphaned = await self._orphaned_operation_data()
        if not orphaned:
            return 0
        data = db_models.OperationDataRow
        # A revision may have started using a hash since it was selected.
        reaped = await self.session.execute(
            delete(data)
            .where(data.data_hash.in_(orphaned), ~self._live_operation())
            .execution_options(synchronize_session=False)
        )
        for model in (
            db_models.RestSearchRow,
            db_models.GraphqlSearchRow,
            db_models.OperationSearchRow,
        ):
            await self.session.execute(
                delete(model)
                .where(
                    model.data_hash.in_(orphaned),
                    ~exists().where(data.data_hash == model.data_hash).correlate(model),
                )
                .execution_options(synchronize_session=False)
            )
        count = reaped.rowcount  # type: ignore[attr-defined]
        logger.debug("operation_data_reaped", count=count)
        return count
