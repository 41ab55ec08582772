import logging
from typing import Any

import structlog


def configure_logging(level: int | str = logging.INFO, *, json_output: bool = True) -> None:
    """Configure structlog on top of stdlib logging.

    API servers and workers emit JSON lines; the CLI may ask for the
    console renderer instead.
    """

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s")


def bind_build_context(build_id: str, **kwargs: Any) -> None:
    """Attach build identifiers to every log emitted by the current task."""

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(build_id=build_id, **kwargs)
