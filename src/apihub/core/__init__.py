"""Core definitions shared by the pipeline, the API and the CLI."""

from apihub.core.errors import (
    ApihubError,
    ConflictError,
    ExitCode,
    ForbiddenError,
    InternalError,
    NotFoundError,
    RateLimitedError,
    UpstreamAuthError,
    UpstreamTimeoutError,
    ValidationError,
    main_with_error_handling,
)

__all__ = [
    "ApihubError",
    "ConflictError",
    "ExitCode",
    "ForbiddenError",
    "InternalError",
    "NotFoundError",
    "RateLimitedError",
    "UpstreamAuthError",
    "UpstreamTimeoutError",
    "ValidationError",
    "main_with_error_handling",
]
