from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.api.deps import principal_dependency, session_dependency
from apihub.core.errors import NotFoundError
from apihub.domain.models import (
    DeprecatedSummary,
    Document,
    OperationTypeCount,
    Reference,
    Revision,
    VersionStatus,
)
from apihub.versions.store import VersionStore

router = APIRouter()


class VersionResponse(BaseModel):
    revision: Revision
    documents: list[Document] = Field(default_factory=list)
    operation_types: list[OperationTypeCount] = Field(default_factory=list)


class VersionPatchRequest(BaseModel):
    status: VersionStatus | None = None
    labels: list[str] | None = None


@router.get("/packages/{package_id}/versions", response_model=list[Revision])
async def list_versions(
    package_id: str,
    version_status: VersionStatus | None = None,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> list[Revision]:
    return await VersionStore(session).list_versions(package_id, status=version_status)


@router.get("/packages/{package_id}/versions/{version}", response_model=VersionResponse)
async def get_version(
    package_id: str,
    version: str,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> VersionResponse:
    """Latest revision of ``version``, or the pinned one for ``version@revision``."""
    store = VersionStore(session)
    revision = await store.resolve_revision(package_id, version)
    return VersionResponse(
        revision=revision,
        documents=await store.get_documents(package_id, revision.version, revision.revision),
        operation_types=await store.operation_type_counts(
            package_id, revision.version, revision.revision
        ),
    )


@router.patch("/packages/{package_id}/versions/{version}", response_model=Revision)
async def patch_version(
    package_id: str,
    version: str,
    payload: VersionPatchRequest,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> Revision:
    return await VersionStore(session).patch_version(
        package_id, version, status=payload.status, labels=payload.labels
    )


@router.delete(
    "/packages/{package_id}/versions/{version}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
async def delete_version(
    package_id: str,
    version: str,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    principal: str = Depends(principal_dependency),  # noqa: B008
) -> Response:
    await VersionStore(session).mark_version_deleted(package_id, version, principal)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/packages/{package_id}/versions/{version}/references",
    response_model=list[Reference],
)
async def get_references(
    package_id: str,
    version: str,
    include_excluded: bool = False,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> list[Reference]:
    store = VersionStore(session)
    revision = await store.resolve_revision(package_id, version)
    return await store.get_references(
        package_id, revision.version, revision.revision, include_excluded=include_excluded
    )


@router.get(
    "/packages/{package_id}/versions/{version}/deprecated/summary",
    response_model=list[DeprecatedSummary],
)
async def get_deprecated_summary(
    package_id: str,
    version: str,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> list[DeprecatedSummary]:
    store = VersionStore(session)
    revision = await store.resolve_revision(package_id, version)
    return await store.deprecated_summary(package_id, revision.version, revision.revision)


@router.get("/packages/{package_id}/versions/{version}/files/{slug}")
async def get_document_file(
    package_id: str,
    version: str,
    slug: str,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> Response:
    store = VersionStore(session)
    revision = await store.resolve_revision(package_id, version)
    found = await store.get_document_bytes(package_id, revision.version, revision.revision, slug)
    if found is None:
        raise NotFoundError(
            "File $slug not found in version $version of package $packageId",
            code="FileNotFound",
            params={"slug": slug, "version": revision.address, "packageId": package_id},
        )
    document, data = found
    return Response(content=data, media_type=document.media_type)
