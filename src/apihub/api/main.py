from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from apihub.api.deps import close_rate_limiter
from apihub.api.routes import builds, comparisons, health, versions
from apihub.config import get_settings
from apihub.core.errors import ApihubError, InternalError
from apihub.db.session import dispose_engine, init_engine
from apihub.logging import configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_logging()
    init_engine(settings)
    yield
    await close_rate_limiter()
    await dispose_engine()


async def apihub_error_handler(request: Request, exc: ApihubError) -> JSONResponse:
    if exc.status >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=str(exc))
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.code, status=exc.status)
    return JSONResponse(status_code=exc.status, content=exc.to_dict())


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    error = InternalError("Database operation failed", code="DatabaseError", debug=type(exc).__name__)
    logger.error("database_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=error.status, content=error.to_dict())


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="ApiHub API",
        version="0.1.0",
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
        lifespan=lifespan,
    )

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.cors_origins],
            allow_methods=["*"],
            allow_headers=["*"],
            allow_credentials=True,
        )

    app.add_exception_handler(ApihubError, apihub_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, database_error_handler)  # type: ignore[arg-type]
    app.include_router(builds.router, prefix=settings.api_prefix, tags=["builds"])
    app.include_router(versions.router, prefix=settings.api_prefix, tags=["versions"])
    app.include_router(comparisons.router, prefix=settings.api_prefix, tags=["comparisons"])
    app.include_router(health.router, tags=["health"])
    return app


app = create_app()
