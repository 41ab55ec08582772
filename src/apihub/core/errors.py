"""
Error taxonomy shared by the build pipeline, the HTTP API and the CLI.

Every error carries a stable machine-readable ``code``, a human message
template whose ``$name`` placeholders are filled from ``params``, and an
opaque ``debug`` string that is appended when rendered.

HTTP statuses:
- 400: ValidationError
- 403: ForbiddenError
- 404: NotFoundError
- 409: ConflictError
- 424: UpstreamTimeoutError, UpstreamAuthError
- 429: RateLimitedError
- 500: InternalError

CLI exit codes:
- 0: Success
- 10: Configuration error
- 11: Upstream error
- 12: Validation / conflict error
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    CONFIG_ERROR = 10
    UPSTREAM_ERROR = 11
    VALIDATION_ERROR = 12
    UNKNOWN_ERROR = 127


def render_template(message: str, params: dict[str, Any]) -> str:
    """Replace ``$key`` placeholders with their parameter values.

    Longer keys are substituted first so ``$packageId`` is not clobbered by
    a shorter ``$package`` parameter.
    """
    for key in sorted(params, key=len, reverse=True):
        message = message.replace(f"${key}", str(params[key]))
    return message


class ApihubError(Exception):
    """Base exception carrying status, code, message template and debug info."""

    status: int = 500
    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    default_code: str = "InternalServerError"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        params: dict[str, Any] | None = None,
        debug: str = "",
    ) -> None:
        self.code = code or self.default_code
        self.message = message
        self.params = params or {}
        self.debug = debug
        super().__init__(str(self))

    def __str__(self) -> str:
        rendered = render_template(self.message, self.params)
        if self.debug:
            return f"{rendered} | {self.debug}"
        return rendered

    @property
    def rendered_message(self) -> str:
        return render_template(self.message, self.params)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "status": self.status,
            "code": self.code,
            "message": self.rendered_message,
        }
        if self.params:
            body["params"] = {k: _jsonable(v) for k, v in self.params.items()}
        if self.debug:
            body["debug"] = self.debug
        return body


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)


class ValidationError(ApihubError):
    status = 400
    exit_code = ExitCode.VALIDATION_ERROR
    default_code = "ValidationFailed"


class ForbiddenError(ApihubError):
    status = 403
    exit_code = ExitCode.VALIDATION_ERROR
    default_code = "Forbidden"


class NotFoundError(ApihubError):
    status = 404
    exit_code = ExitCode.VALIDATION_ERROR
    default_code = "NotFound"


class ConflictError(ApihubError):
    status = 409
    exit_code = ExitCode.VALIDATION_ERROR
    default_code = "Conflict"


class UpstreamTimeoutError(ApihubError):
    """An upstream provider (e.g. Git) did not answer within its deadline."""

    status = 424
    exit_code = ExitCode.UPSTREAM_ERROR
    default_code = "UpstreamTimeout"


class UpstreamAuthError(ApihubError):
    """An upstream provider rejected our credentials (revoked or expired token)."""

    status = 424
    exit_code = ExitCode.UPSTREAM_ERROR
    default_code = "UpstreamAuthFailed"


class RateLimitedError(ApihubError):
    status = 429
    exit_code = ExitCode.UPSTREAM_ERROR
    default_code = "RateLimitExceeded"


class InternalError(ApihubError):
    status = 500
    default_code = "InternalServerError"


# Error factories for the pipeline's stable codes


def invalid_revision_format(version: str, debug: str = "") -> ValidationError:
    return ValidationError(
        "Version '$version' has invalid revision format",
        code="InvalidRevisionFormat",
        params={"version": version},
        debug=debug,
    )


def package_not_found(package_id: str) -> NotFoundError:
    return NotFoundError(
        "Package with packageId = $packageId not found",
        code="PackageNotFound",
        params={"packageId": package_id},
    )


def version_not_found(package_id: str, version: str) -> NotFoundError:
    return NotFoundError(
        "Published version $version not found for package $packageId",
        code="PublishedVersionNotFound",
        params={"version": version, "packageId": package_id},
    )


def revision_missing(package_id: str, version: str) -> InternalError:
    return InternalError(
        "Revision $version of package $packageId disappeared after it was written",
        code="PublishedRevisionMissing",
        params={"packageId": package_id, "version": version},
    )


def build_not_found(build_id: str) -> NotFoundError:
    return NotFoundError(
        "Build with buildId='$buildId' is not found",
        code="BuildNotFound",
        params={"buildId": build_id},
    )


def build_sources_not_found(build_id: str) -> NotFoundError:
    return NotFoundError(
        "Sources for build '$buildId' are not found",
        code="BuildSourcesNotFound",
        params={"buildId": build_id},
    )


def build_already_finished(build_id: str) -> ConflictError:
    return ConflictError(
        "Build with buildId='$buildId' is already finished",
        code="BuildAlreadyFinished",
        params={"buildId": build_id},
    )


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI entry points that converts errors to exit codes.

    Exit codes:
        - ApihubError subclasses: the error's exit_code
        - KeyboardInterrupt: 130
        - Other exceptions: 127
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except ApihubError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        code=e.code,
                        message=str(e),
                        exit_code=int(e.exit_code),
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=int(ExitCode.UNKNOWN_ERROR),
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator
