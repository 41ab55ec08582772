from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.core.errors import ConflictError, ValidationError, package_not_found
from apihub.db import models as db_models
from apihub.db.models import utcnow
from apihub.domain.identifiers import (
    parent_package_id,
    validate_grouping_prefix,
    validate_package_id,
)
from apihub.domain.models import Package, PackageKind, PackageTransition

logger = structlog.get_logger()


def package_from_row(row: db_models.PackageRow) -> Package:
    return Package(
        id=row.id,
        kind=PackageKind(row.kind),
        name=row.name,
        parent_id=row.parent_id,
        alias=row.alias,
        description=row.description,
        service_name=row.service_name,
        default_released_version=row.default_released_version,
        rest_grouping_prefix=row.rest_grouping_prefix,
        graphql_grouping_prefix=row.graphql_grouping_prefix,
        created_at=row.created_at,
        deleted_at=row.deleted_at,
    )


@dataclass(slots=True)
class PackageStore:
    """Package hierarchy rows, tombstones and move history."""

    session: AsyncSession

    async def create_package(
        self,
        package_id: str,
        kind: PackageKind,
        name: str,
        *,
        alias: str = "",
        description: str = "",
        created_by: str = "",
    ) -> Package:
        validate_package_id(package_id)
        parent_id = parent_package_id(package_id)
        if (parent_id is None) != (kind == PackageKind.workspace):
            raise ValidationError(
                "Package kind '$kind' does not match id '$packageId'",
                code="InvalidPackageKind",
                params={"kind": kind.value, "packageId": package_id},
            )
        if parent_id is not None and await self.get_package(parent_id) is None:
            raise package_not_found(parent_id)
        if await self.get_package(package_id, include_deleted=True) is not None:
            raise ConflictError(
                "Package with id '$packageId' already exists",
                code="PackageAlreadyExists",
                params={"packageId": package_id},
            )
        row = db_models.PackageRow(
            id=package_id,
            kind=kind.value,
            name=name,
            alias=alias,
            parent_id=parent_id,
            description=description,
            created_by=created_by,
        )
        self.session.add(row)
        await self.session.commit()
        logger.info("package_created", package_id=package_id, kind=kind.value)
        return package_from_row(row)

    async def get_package(self, package_id: str, *, include_deleted: bool = False) -> Package | None:
        stmt = select(db_models.PackageRow).where(db_models.PackageRow.id == package_id)
        if not include_deleted:
            stmt = stmt.where(db_models.PackageRow.deleted_at.is_(None))
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return package_from_row(row) if row else None

    async def require_package(self, package_id: str) -> Package:
        package = await self.get_package(package_id)
        if package is None:
            raise package_not_found(package_id)
        return package

    async def delete_package(self, package_id: str, user_id: str) -> int:
        """Tombstone a package and every descendant; returns the number of rows marked."""
        await self.require_package(package_id)
        result = await self.session.execute(
            update(db_models.PackageRow)
            .where(
                or_(
                    db_models.PackageRow.id == package_id,
                    db_models.PackageRow.id.startswith(f"{package_id}.", autoescape=True),
                ),
                db_models.PackageRow.deleted_at.is_(None),
            )
            .values(deleted_at=utcnow(), deleted_by=user_id)
        )
        await self.session.commit()
        count = result.rowcount  # type: ignore[attr-defined]
        logger.info("package_deleted", package_id=package_id, affected=count, user_id=user_id)
        return count

    async def set_grouping_prefixes(
        self, package_id: str, *, rest: str | None = None, graphql: str | None = None
    ) -> Package:
        await self.require_package(package_id)
        values: dict[str, str] = {}
        if rest is not None:
            validate_grouping_prefix(rest)
            values["rest_grouping_prefix"] = rest
        if graphql is not None:
            validate_grouping_prefix(graphql)
            values["graphql_grouping_prefix"] = graphql
        if values:
            await self.session.execute(
                update(db_models.PackageRow)
                .where(db_models.PackageRow.id == package_id)
                .values(**values)
            )
            await self.session.commit()
        return await self.require_package(package_id)

    async def record_transition(
        self, old_package_id: str, new_package_id: str, *, overwrite_history: bool = False
    ) -> None:
        """Remember that ``old_package_id`` now lives at ``new_package_id``.

        Earlier moves that ended at the old id are redirected to the new id, and
        a redirect of a package onto itself is dropped. With
        ``overwrite_history`` a stale record reserving the new id is removed first.
        """
        transition = db_models.PackageTransitionRow
        try:
            if overwrite_history:
                await self.session.execute(
                    delete(transition).where(transition.old_package_id == new_package_id)
                )
            existing = (
                (
                    await self.session.execute(
                        select(transition).where(transition.new_package_id == old_package_id)
                    )
                )
                .scalars()
                .all()
            )
            self.session.add(
                transition(old_package_id=old_package_id, new_package_id=new_package_id)
            )
            await self.session.flush()
            for row in existing:
                if row.old_package_id == new_package_id:
                    await self.session.delete(row)
                else:
                    row.new_package_id = new_package_id
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ConflictError(
                "Package id '$packageId' is reserved by an earlier move",
                code="PackageTransitionConflict",
                params={"packageId": old_package_id},
                debug=str(exc.orig),
            ) from exc
        logger.info("package_transition_recorded", old=old_package_id, new=new_package_id)

    async def get_new_package_id(self, old_package_id: str) -> str | None:
        stmt = select(db_models.PackageTransitionRow.new_package_id).where(
            db_models.PackageTransitionRow.old_package_id == old_package_id
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_old_package_ids(self, new_package_id: str) -> list[str]:
        stmt = (
            select(db_models.PackageTransitionRow.old_package_id)
            .where(db_models.PackageTransitionRow.new_package_id == new_package_id)
            .order_by(db_models.PackageTransitionRow.old_package_id)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_transitions(self) -> list[PackageTransition]:
        stmt = select(db_models.PackageTransitionRow).order_by(
            db_models.PackageTransitionRow.old_package_id
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [
            PackageTransition(old_package_id=row.old_package_id, new_package_id=row.new_package_id)
            for row in rows
        ]
