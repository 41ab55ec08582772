from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.db import models as db_models
from apihub.db.statements import upsert

logger = structlog.get_logger()


class PutOutcome(StrEnum):
    stored = "stored"
    deduped = "deduped"


@dataclass(slots=True)
class VersionSources:
    archive_checksum: str
    data: bytes
    config: dict


@dataclass(slots=True)
class ContentStore:
    """Checksum-addressed storage for document bytes and source archives.

    Checksums are supplied by callers and never re-verified on read. Writes
    join the caller's transaction; nothing here commits.
    """

    session: AsyncSession

    async def put_blob(
        self, package_id: str, checksum: str, media_type: str, data: bytes
    ) -> PutOutcome:
        if await self._blob_exists(package_id, checksum):
            return PutOutcome.deduped
        stmt = (
            upsert(self.session, db_models.PublishedDataRow)
            .values(package_id=package_id, checksum=checksum, media_type=media_type, data=data)
            .on_conflict_do_nothing(index_elements=["package_id", "checksum"])
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:  # type: ignore[attr-defined]
            return PutOutcome.deduped
        logger.debug("blob_stored", package_id=package_id, checksum=checksum, size=len(data))
        return PutOutcome.stored

    async def get_blob(self, package_id: str, checksum: str) -> bytes | None:
        stmt = select(db_models.PublishedDataRow.data).where(
            db_models.PublishedDataRow.package_id == package_id,
            db_models.PublishedDataRow.checksum == checksum,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_blob_media_type(self, package_id: str, checksum: str) -> str | None:
        stmt = select(db_models.PublishedDataRow.media_type).where(
            db_models.PublishedDataRow.package_id == package_id,
            db_models.PublishedDataRow.checksum == checksum,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def put_source_archive(self, checksum: str, data: bytes) -> PutOutcome:
        exists = await self.session.execute(
            select(db_models.SourceArchiveRow.checksum).where(
                db_models.SourceArchiveRow.checksum == checksum
            )
        )
        if exists.scalar_one_or_none() is not None:
            return PutOutcome.deduped
        stmt = (
            upsert(self.session, db_models.SourceArchiveRow)
            .values(checksum=checksum, data=data)
            .on_conflict_do_nothing(index_elements=["checksum"])
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:  # type: ignore[attr-defined]
            return PutOutcome.deduped
        return PutOutcome.stored

    async def bind_version_sources(
        self,
        package_id: str,
        version: str,
        revision: int,
        archive_checksum: str,
        config: dict,
    ) -> None:
        """Point a revision at its source archive, replacing any previous binding."""
        stmt = upsert(self.session, db_models.PublishedSourceRow).values(
            package_id=package_id,
            version=version,
            revision=revision,
            archive_checksum=archive_checksum,
            config=config,
            publish_meta={},
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["package_id", "version", "revision"],
            set_={"archive_checksum": stmt.excluded.archive_checksum, "config": stmt.excluded.config},
        )
        await self.session.execute(stmt)

    async def get_version_sources(
        self, package_id: str, version: str, revision: int
    ) -> VersionSources | None:
        stmt = (
            select(
                db_models.PublishedSourceRow.archive_checksum,
                db_models.PublishedSourceRow.config,
                db_models.SourceArchiveRow.data,
            )
            .join(
                db_models.SourceArchiveRow,
                db_models.SourceArchiveRow.checksum == db_models.PublishedSourceRow.archive_checksum,
            )
            .where(
                db_models.PublishedSourceRow.package_id == package_id,
                db_models.PublishedSourceRow.version == version,
                db_models.PublishedSourceRow.revision == revision,
            )
        )
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return VersionSources(archive_checksum=row.archive_checksum, data=row.data, config=row.config)

    async def _blob_exists(self, package_id: str, checksum: str) -> bool:
        stmt = select(db_models.PublishedDataRow.checksum).where(
            db_models.PublishedDataRow.package_id == package_id,
            db_models.PublishedDataRow.checksum == checksum,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none() is not None
