from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, Base64Bytes, Field
from sqlalchemy.ext.asyncio import AsyncSession

from apihub.api.deps import get_rate_limiter, principal_dependency, session_dependency
from apihub.config import Settings, get_settings
from apihub.core.errors import NotFoundError
from apihub.domain.models import Build, BuildStatus, BuildSubmission
from apihub.publish.transaction import PublishTransaction
from apihub.queue.models import BuildTask
from apihub.queue.repository import SOURCES_NOT_FOUND_DETAILS, BuildQueue, parse_build_config
from apihub.ratelimit import SubmissionRateLimiter

router = APIRouter()
logger = structlog.get_logger()


class BuildSubmitRequest(BaseModel):
    package_id: str
    config: dict[str, Any]
    source: Base64Bytes | None = None
    priority: int = 0
    depends: list[str] = Field(default_factory=list)


class BuildSubmitResponse(BaseModel):
    build_id: str


class BuildResponse(BaseModel):
    build_id: str
    package_id: str
    version: str
    status: BuildStatus
    details: str
    priority: int
    restart_count: int
    builder_id: str | None = None
    created_by: str
    created_at: datetime
    last_active: datetime
    depends: list[str] = Field(default_factory=list)


class NextBuildResponse(BaseModel):
    build_id: str
    package_id: str
    version: str
    restart_count: int
    priority: int
    config: dict[str, Any]
    source: str | None = None


class BuildStatusRequest(BaseModel):
    status: BuildStatus
    details: str = ""


class BuildResultResponse(BaseModel):
    build_id: str
    status: BuildStatus
    package_id: str
    version: str | None = None


def _build_response(build: Build, depends: list[str]) -> BuildResponse:
    return BuildResponse(**build.model_dump(), depends=depends)


@router.post(
    "/builds",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=BuildSubmitResponse,
)
async def submit_build(
    payload: BuildSubmitRequest,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
    limiter: SubmissionRateLimiter = Depends(get_rate_limiter),  # noqa: B008
    principal: str = Depends(principal_dependency),  # noqa: B008
) -> BuildSubmitResponse:
    await limiter.check(principal)
    config = parse_build_config(payload.config)
    queue = BuildQueue.from_settings(session, settings)
    build_id = await queue.submit(
        BuildSubmission(
            package_id=payload.package_id,
            config=config,
            source=payload.source,
            priority=payload.priority,
            depends=payload.depends,
            created_by=principal,
        )
    )
    return BuildSubmitResponse(build_id=build_id)


@router.get("/builds/{build_id}", response_model=BuildResponse)
async def get_build(
    build_id: str,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> BuildResponse:
    queue = BuildQueue.from_settings(session, settings)
    build = await queue.get_build(build_id)
    return _build_response(build, await queue.get_dependencies(build_id))


@router.get(
    "/next-build",
    response_model=NextBuildResponse,
    responses={204: {"description": "No build is ready"}},
)
async def take_next_build(
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
    principal: str = Depends(principal_dependency),  # noqa: B008
) -> NextBuildResponse | Response:
    queue = BuildQueue.from_settings(session, settings)
    build = await queue.take_free_build(principal)
    if build is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    try:
        source = await queue.get_source(build.build_id)
    except NotFoundError:
        await queue.fail(build.build_id, SOURCES_NOT_FOUND_DETAILS)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    task = BuildTask.from_lease(build, source)
    return Response(content=task.to_message_body(), media_type="application/json")


@router.put("/builds/{build_id}/status", response_model=BuildResponse)
async def update_build_status(
    build_id: str,
    payload: BuildStatusRequest,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
    principal: str = Depends(principal_dependency),  # noqa: B008
) -> BuildResponse:
    queue = BuildQueue.from_settings(session, settings)
    build = await queue.update_status(
        build_id, payload.status, payload.details, builder_id=principal
    )
    return _build_response(build, await queue.get_dependencies(build_id))


@router.post("/builds/{build_id}/result", response_model=BuildResultResponse)
async def submit_build_result(
    build_id: str,
    request: Request,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
    principal: str = Depends(principal_dependency),  # noqa: B008
) -> BuildResultResponse:
    """Commit a builder's output; publish results become a new revision."""
    payload = await request.body()
    transaction = PublishTransaction.for_session(session, settings)
    revision = await transaction.commit_result(build_id, payload, builder_id=principal)
    build = await BuildQueue.from_settings(session, settings).get_build(build_id)
    logger.info("build_result_accepted", build_id=build_id, builder_id=principal)
    return BuildResultResponse(
        build_id=build_id,
        status=build.status,
        package_id=build.package_id,
        version=revision.address if revision else None,
    )
