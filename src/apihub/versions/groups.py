from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable

import structlog
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.core.errors import ConflictError, NotFoundError, ValidationError
from apihub.db import models as db_models
from apihub.domain.identifiers import (
    extract_group_name,
    make_grouping_prefix_regex,
    make_operation_group_id,
)
from apihub.domain.models import ApiType, OperationGroup
from apihub.versions.store import RevisionKey, VersionStore

logger = structlog.get_logger()

ACTION_CREATE = "create"
ACTION_DELETE = "delete"
ACTION_UPDATE = "update"

OperationKey = tuple[str, str, int, str]


def group_from_row(row: db_models.OperationGroupRow, operations_count: int = 0) -> OperationGroup:
    return OperationGroup(
        group_id=row.group_id,
        package_id=row.package_id,
        version=row.version,
        revision=row.revision,
        api_type=ApiType(row.api_type),
        group_name=row.group_name,
        description=row.description,
        autogenerated=row.autogenerated,
        operations_count=operations_count,
    )


def _group_snapshot(row: db_models.OperationGroupRow) -> dict[str, Any]:
    return {
        "groupId": row.group_id,
        "packageId": row.package_id,
        "version": row.version,
        "revision": row.revision,
        "apiType": row.api_type,
        "groupName": row.group_name,
        "description": row.description,
        "autogenerated": row.autogenerated,
    }


@dataclass(slots=True)
class OperationGroupStore:
    """Named operation subsets of a revision.

    Manual edits commit on their own. ``propagate_previous_groups`` and
    ``recalculate_autogenerated`` run inside the publish transaction and
    leave committing to it.
    """

    session: AsyncSession

    async def list_groups(self, package_id: str, version: str, revision: int) -> list[OperationGroup]:
        counts = (
            select(
                db_models.GroupedOperationRow.group_id,
                func.count().label("operations_count"),
            )
            .group_by(db_models.GroupedOperationRow.group_id)
            .subquery()
        )
        stmt = (
            select(db_models.OperationGroupRow, counts.c.operations_count)
            .outerjoin(counts, counts.c.group_id == db_models.OperationGroupRow.group_id)
            .where(
                db_models.OperationGroupRow.package_id == package_id,
                db_models.OperationGroupRow.version == version,
                db_models.OperationGroupRow.revision == revision,
            )
            .order_by(db_models.OperationGroupRow.api_type, db_models.OperationGroupRow.group_name)
        )
        rows = (await self.session.execute(stmt)).all()
        return [group_from_row(row, count or 0) for row, count in rows]

    async def get_group(
        self, package_id: str, version: str, revision: int, api_type: ApiType, group_name: str
    ) -> OperationGroup | None:
        group_id = make_operation_group_id(package_id, version, revision, api_type.value, group_name)
        row = await self.session.get(db_models.OperationGroupRow, group_id)
        return group_from_row(row) if row else None

    async def get_group_operation_ids(self, group_id: str) -> list[OperationKey]:
        stmt = (
            select(
                db_models.GroupedOperationRow.package_id,
                db_models.GroupedOperationRow.version,
                db_models.GroupedOperationRow.revision,
                db_models.GroupedOperationRow.operation_id,
            )
            .where(db_models.GroupedOperationRow.group_id == group_id)
            .order_by(db_models.GroupedOperationRow.operation_id)
        )
        return [tuple(row) for row in (await self.session.execute(stmt)).all()]  # type: ignore[misc]

    async def create_group(
        self,
        package_id: str,
        version: str,
        revision: int,
        api_type: ApiType,
        group_name: str,
        *,
        description: str = "",
        user_id: str = "",
    ) -> OperationGroup:
        if not group_name:
            raise ValidationError("Group name must not be empty", code="InvalidGroupName")
        group_id = make_operation_group_id(package_id, version, revision, api_type.value, group_name)
        row = db_models.OperationGroupRow(
            group_id=group_id,
            package_id=package_id,
            version=version,
            revision=revision,
            api_type=api_type.value,
            group_name=group_name,
            description=description,
            autogenerated=False,
        )
        try:
            self.session.add(row)
            self.session.add(
                db_models.OperationGroupHistoryRow(
                    group_id=group_id,
                    action=ACTION_CREATE,
                    data=_group_snapshot(row),
                    user_id=user_id,
                    automatic=False,
                )
            )
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ConflictError(
                "Operation group '$groupName' already exists",
                code="OperationGroupAlreadyExists",
                params={"groupName": group_name},
            ) from exc
        logger.info("operation_group_created", group_id=group_id, group_name=group_name)
        return group_from_row(row)

    async def delete_group(self, group_id: str, *, user_id: str = "") -> None:
        row = await self._require_manual_group(group_id)
        snapshot = _group_snapshot(row)
        await self.session.execute(
            delete(db_models.GroupedOperationRow).where(
                db_models.GroupedOperationRow.group_id == group_id
            )
        )
        await self.session.delete(row)
        self.session.add(
            db_models.OperationGroupHistoryRow(
                group_id=group_id, action=ACTION_DELETE, data=snapshot, user_id=user_id
            )
        )
        await self.session.commit()

    async def set_group_operations(
        self, group_id: str, operations: Iterable[OperationKey], *, user_id: str = ""
    ) -> int:
        """Replace a manual group's members; every member must exist in the revision or its refs."""
        row = await self._require_manual_group(group_id)
        allowed = await self._available_operations(
            (row.package_id, row.version, row.revision), api_type=row.api_type
        )
        members = list(dict.fromkeys(operations))
        missing = [member for member in members if member not in allowed]
        if missing:
            raise ValidationError(
                "Operations $operations are not part of the group's revision",
                code="GroupOperationsNotFound",
                params={"operations": [member[3] for member in missing]},
            )
        await self.session.execute(
            delete(db_models.GroupedOperationRow).where(
                db_models.GroupedOperationRow.group_id == group_id
            )
        )
        self.session.add_all(
            db_models.GroupedOperationRow(
                group_id=group_id,
                package_id=pkg,
                version=ver,
                revision=rev,
                operation_id=operation_id,
            )
            for pkg, ver, rev, operation_id in members
        )
        self.session.add(
            db_models.OperationGroupHistoryRow(
                group_id=group_id,
                action=ACTION_UPDATE,
                data={**_group_snapshot(row), "operations": len(members)},
                user_id=user_id,
            )
        )
        await self.session.commit()
        return len(members)

    async def propagate_previous_groups(
        self,
        target: RevisionKey,
        *,
        previous_version: str | None,
        previous_package_id: str | None,
        user_id: str = "",
    ) -> int:
        """Copy manual groups from the preceding revision into ``target``.

        The preceding revision is ``revision - 1`` of the same version when
        there is one, otherwise the latest revision of the declared previous
        version. Memberships survive only for operations that still exist in
        the new revision or its active references.
        """
        package_id, version, revision = target
        source = await self._propagation_source(
            target, previous_version=previous_version, previous_package_id=previous_package_id
        )
        if source is None:
            return 0
        source_groups = (
            (
                await self.session.execute(
                    select(db_models.OperationGroupRow).where(
                        db_models.OperationGroupRow.package_id == source[0],
                        db_models.OperationGroupRow.version == source[1],
                        db_models.OperationGroupRow.revision == source[2],
                        db_models.OperationGroupRow.autogenerated.is_(False),
                    )
                )
            )
            .scalars()
            .all()
        )
        if not source_groups:
            return 0

        existing_names = {
            (row.api_type, row.group_name)
            for row in await self._groups_of(package_id, version, revision)
        }
        allowed = await self._available_operations(target)
        copied = 0
        for old in source_groups:
            if (old.api_type, old.group_name) in existing_names:
                continue
            new_group = db_models.OperationGroupRow(
                group_id=make_operation_group_id(
                    package_id, version, revision, old.api_type, old.group_name
                ),
                package_id=package_id,
                version=version,
                revision=revision,
                api_type=old.api_type,
                group_name=old.group_name,
                description=old.description,
                autogenerated=False,
            )
            self.session.add(new_group)
            self.session.add(
                db_models.OperationGroupHistoryRow(
                    group_id=new_group.group_id,
                    action=ACTION_CREATE,
                    data=_group_snapshot(new_group),
                    user_id=user_id,
                    automatic=True,
                )
            )
            await self.session.flush()
            for pkg, ver, rev, operation_id in await self.get_group_operation_ids(old.group_id):
                if (pkg, ver, rev) == source:
                    pkg, ver, rev = package_id, version, revision
                if (pkg, ver, rev, operation_id) not in allowed:
                    continue
                self.session.add(
                    db_models.GroupedOperationRow(
                        group_id=new_group.group_id,
                        package_id=pkg,
                        version=ver,
                        revision=rev,
                        operation_id=operation_id,
                    )
                )
            copied += 1
        await self.session.flush()
        logger.info(
            "operation_groups_propagated",
            package_id=package_id,
            version=f"{version}@{revision}",
            source=f"{source[0]}:{source[1]}@{source[2]}",
            groups=copied,
        )
        return copied

    async def recalculate_autogenerated(
        self,
        target: RevisionKey,
        *,
        rest_grouping_prefix: str = "",
        graphql_grouping_prefix: str = "",
        user_id: str = "",
    ) -> int:
        """Rebuild prefix-derived groups of ``target`` from its operations' path or method."""
        if not rest_grouping_prefix and not graphql_grouping_prefix:
            return 0
        package_id, version, revision = target
        patterns: dict[str, re.Pattern[str]] = {}
        if rest_grouping_prefix:
            patterns[ApiType.rest.value] = re.compile(make_grouping_prefix_regex(rest_grouping_prefix))
        if graphql_grouping_prefix:
            patterns[ApiType.graphql.value] = re.compile(
                make_grouping_prefix_regex(graphql_grouping_prefix)
            )

        await self._delete_groups(
            [row for row in await self._groups_of(*target) if row.autogenerated]
        )

        members: dict[tuple[str, str], list[str]] = defaultdict(list)
        operations = (
            (
                await self.session.execute(
                    select(db_models.OperationRow).where(
                        db_models.OperationRow.package_id == package_id,
                        db_models.OperationRow.version == version,
                        db_models.OperationRow.revision == revision,
                    )
                )
            )
            .scalars()
            .all()
        )
        for operation in operations:
            pattern = patterns.get(operation.type)
            if pattern is None:
                continue
            field = "path" if operation.type == ApiType.rest.value else "method"
            name = extract_group_name(pattern, str((operation.metadata_ or {}).get(field, "")))
            if name:
                members[(operation.type, name)].append(operation.operation_id)
        if not members:
            return 0

        clashing = [
            row
            for row in await self._groups_of(*target)
            if (row.api_type, row.group_name) in members
        ]
        for row in clashing:
            self.session.add(
                db_models.OperationGroupHistoryRow(
                    group_id=row.group_id,
                    action=ACTION_DELETE,
                    data=_group_snapshot(row),
                    user_id=user_id,
                    automatic=True,
                )
            )
        await self._delete_groups(clashing)

        descriptions = await self._previous_autogenerated_descriptions(target)
        for (api_type, name), operation_ids in sorted(members.items()):
            group_id = make_operation_group_id(package_id, version, revision, api_type, name)
            self.session.add(
                db_models.OperationGroupRow(
                    group_id=group_id,
                    package_id=package_id,
                    version=version,
                    revision=revision,
                    api_type=api_type,
                    group_name=name,
                    description=descriptions.get((api_type, name), ""),
                    autogenerated=True,
                )
            )
            await self.session.flush()
            self.session.add_all(
                db_models.GroupedOperationRow(
                    group_id=group_id,
                    package_id=package_id,
                    version=version,
                    revision=revision,
                    operation_id=operation_id,
                )
                for operation_id in sorted(set(operation_ids))
            )
        await self.session.flush()
        return len(members)

    async def _propagation_source(
        self,
        target: RevisionKey,
        *,
        previous_version: str | None,
        previous_package_id: str | None,
    ) -> RevisionKey | None:
        package_id, version, revision = target
        if revision > 1:
            return (package_id, version, revision - 1)
        if not previous_version:
            return None
        source_package = previous_package_id or package_id
        latest = await VersionStore(self.session).get_latest_revision(source_package, previous_version)
        if latest == 0:
            return None
        return (source_package, previous_version, latest)

    async def _available_operations(
        self, target: RevisionKey, *, api_type: str | None = None
    ) -> set[OperationKey]:
        keys = [target, *await VersionStore(self.session).transitive_refs(*target)]
        op = db_models.OperationRow
        stmt = select(op.package_id, op.version, op.revision, op.operation_id).where(
            or_(
                *(
                    and_(op.package_id == pkg, op.version == ver, op.revision == rev)
                    for pkg, ver, rev in keys
                )
            )
        )
        if api_type is not None:
            stmt = stmt.where(op.type == api_type)
        return {tuple(row) for row in (await self.session.execute(stmt)).all()}  # type: ignore[misc]

    async def _groups_of(
        self, package_id: str, version: str, revision: int
    ) -> list[db_models.OperationGroupRow]:
        stmt = select(db_models.OperationGroupRow).where(
            db_models.OperationGroupRow.package_id == package_id,
            db_models.OperationGroupRow.version == version,
            db_models.OperationGroupRow.revision == revision,
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def _delete_groups(self, rows: list[db_models.OperationGroupRow]) -> None:
        if not rows:
            return
        group_ids = [row.group_id for row in rows]
        await self.session.execute(
            delete(db_models.GroupedOperationRow).where(
                db_models.GroupedOperationRow.group_id.in_(group_ids)
            )
        )
        for row in rows:
            await self.session.delete(row)
        await self.session.flush()

    async def _previous_autogenerated_descriptions(
        self, target: RevisionKey
    ) -> dict[tuple[str, str], str]:
        package_id, version, revision = target
        if revision <= 1:
            return {}
        stmt = select(db_models.OperationGroupRow).where(
            db_models.OperationGroupRow.package_id == package_id,
            db_models.OperationGroupRow.version == version,
            db_models.OperationGroupRow.revision == revision - 1,
            db_models.OperationGroupRow.autogenerated.is_(True),
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return {(row.api_type, row.group_name): row.description for row in rows}

    async def _require_manual_group(self, group_id: str) -> db_models.OperationGroupRow:
        row = await self.session.get(db_models.OperationGroupRow, group_id)
        if row is None:
            raise NotFoundError(
                "Operation group '$groupId' not found",
                code="OperationGroupNotFound",
                params={"groupId": group_id},
            )
        if row.autogenerated:
            raise ValidationError(
                "Autogenerated group '$groupName' cannot be modified",
                code="AutogeneratedGroupReadOnly",
                params={"groupName": row.group_name},
            )
        return row
