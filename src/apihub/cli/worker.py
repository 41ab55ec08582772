"""
CLI command that runs a build worker.

Usage:
    apihub worker --parser mybuilder.parser:parse_build
    apihub worker --parser mybuilder.parser:parse_build --once
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import signal

from apihub.cli.ux import info, success, warning
from apihub.config import get_settings
from apihub.core.errors import ValidationError
from apihub.db.session import dispose_engine, init_engine
from apihub.workers.runtime import BuildParser, BuildWorker


def load_parser(path: str) -> BuildParser:
    """Import a build parser from a ``module:attribute`` path."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValidationError(
            "Parser path $path must look like module:attribute",
            code="InvalidParserPath",
            params={"path": path},
        )
    try:
        module = importlib.import_module(module_name)
    except ModuleNotFoundError as exc:
        raise ValidationError(
            "Parser module $module cannot be imported",
            code="InvalidParserPath",
            params={"module": module_name},
            debug=str(exc),
        ) from exc
    parser = getattr(module, attribute, None)
    if parser is None or not callable(parser):
        raise ValidationError(
            "Parser $path is not a callable",
            code="InvalidParserPath",
            params={"path": path},
        )
    return parser


async def _run_worker(worker: BuildWorker, once: bool) -> bool:
    init_engine(get_settings())
    try:
        if once:
            return await worker.run_once()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, worker.stop)
        await worker.run()
        return True
    finally:
        await dispose_engine()


def worker_command(parser_path: str, builder_id: str | None = None, once: bool = False) -> int:
    parser = load_parser(parser_path)
    worker = BuildWorker(parser, builder_id=builder_id)
    info(f"Worker {worker.builder_id} polling for builds")
    processed = asyncio.run(_run_worker(worker, once))
    if once and not processed:
        warning("No build was ready")
    else:
        success(f"Worker {worker.builder_id} finished")
    return 0


def register_worker_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register worker subcommand parser."""
    parser = subparsers.add_parser("worker", help="Lease builds and publish their results")
    parser.add_argument(
        "--parser",
        required=True,
        dest="parser_path",
        help="Build parser to run, as module:attribute",
    )
    parser.add_argument("--builder-id", help="Identifier to lease builds under")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process at most one build and exit",
    )


def handle_worker_command(args: argparse.Namespace) -> int:
    """Handle worker subcommand."""
    return worker_command(
        args.parser_path,
        builder_id=getattr(args, "builder_id", None),
        once=getattr(args, "once", False),
    )
