from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.api.deps import session_dependency
from apihub.changelog.engine import ChangelogEngine, comparison_not_found
from apihub.core.errors import NotFoundError
from apihub.domain.models import (
    ApiType,
    ChangelogEntry,
    ChangelogQuery,
    Severity,
    VersionComparison,
)
from apihub.packages.store import PackageStore

router = APIRouter()


class ChangelogResponse(BaseModel):
    comparison: VersionComparison
    changes: list[ChangelogEntry] = Field(default_factory=list)


class TransitionResponse(BaseModel):
    old_package_id: str
    new_package_id: str


@router.get("/comparisons/{comparison_id}", response_model=VersionComparison)
async def get_comparison(
    comparison_id: str,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> VersionComparison:
    comparison = await ChangelogEngine(session).get_comparison(comparison_id)
    if comparison is None:
        raise comparison_not_found(comparison_id)
    return comparison


@router.get("/comparisons/{comparison_id}/changes", response_model=ChangelogResponse)
async def get_changelog(
    comparison_id: str,
    ref_package_id: str = "",
    text_filter: str = "",
    api_type: ApiType | None = None,
    api_kind: str = "",
    api_audience: str = "",
    tags: list[str] = Query(default=[]),  # noqa: B008
    empty_tag: bool = False,
    group: str = "",
    empty_group: bool = False,
    severities: list[Severity] = Query(default=[]),  # noqa: B008
    document_slug: str = "",
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> ChangelogResponse:
    engine = ChangelogEngine(session)
    comparison = await engine.get_comparison(comparison_id)
    if comparison is None:
        raise comparison_not_found(comparison_id)
    query = ChangelogQuery(
        comparison_id=comparison_id,
        ref_package_id=ref_package_id,
        text_filter=text_filter,
        api_type=api_type,
        api_kind=api_kind,
        api_audience=api_audience,
        tags=tags,
        empty_tag=empty_tag,
        group=group,
        empty_group=empty_group,
        severities=severities,
        document_slug=document_slug,
        limit=limit,
        offset=offset,
    )
    return ChangelogResponse(comparison=comparison, changes=await engine.get_changelog(query))


@router.get("/transitions/{old_package_id}", response_model=TransitionResponse)
async def get_transition(
    old_package_id: str,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> TransitionResponse:
    new_package_id = await PackageStore(session).get_new_package_id(old_package_id)
    if new_package_id is None:
        raise NotFoundError(
            "No transition recorded for package $packageId",
            code="PackageTransitionNotFound",
            params={"packageId": old_package_id},
        )
    return TransitionResponse(old_package_id=old_package_id, new_package_id=new_package_id)
