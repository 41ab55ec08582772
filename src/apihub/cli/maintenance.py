"""
CLI commands for schema setup and build retention.

Usage:
    apihub init-db
    apihub retention
    apihub build-status <build-id>
"""

from __future__ import annotations

import argparse
import asyncio

from apihub.cli.ux import console, header, print_table, success
from apihub.config import get_settings
from apihub.db.session import create_schema, dispose_engine, get_session_factory, init_engine
from apihub.domain.models import Build
from apihub.queue.repository import BuildQueue
from apihub.queue.retention import BuildRetention, RetentionReport


async def _init_db() -> None:
    init_engine(get_settings())
    try:
        await create_schema()
    finally:
        await dispose_engine()


async def _run_retention() -> RetentionReport:
    settings = get_settings()
    init_engine(settings)
    try:
        async with get_session_factory()() as session:
            return await BuildRetention.from_settings(session, settings).run()
    finally:
        await dispose_engine()


async def _load_build(build_id: str) -> tuple[Build, list[str]]:
    settings = get_settings()
    init_engine(settings)
    try:
        async with get_session_factory()() as session:
            queue = BuildQueue.from_settings(session, settings)
            build = await queue.get_build(build_id)
            return build, await queue.get_dependencies(build_id)
    finally:
        await dispose_engine()


def init_db_command() -> int:
    asyncio.run(_init_db())
    success("Schema created")
    return 0


def retention_command() -> int:
    report = asyncio.run(_run_retention())
    print_table(
        f"Retention run {report.run_id}",
        ["Target", "Removed"],
        [
            ["build sources", str(report.build_src)],
            ["build results", str(report.build_result)],
            ["operation data", str(report.operation_data)],
        ],
    )
    return 0


def build_status_command(build_id: str) -> int:
    build, depends = asyncio.run(_load_build(build_id))
    header(f"Build {build.build_id}")
    console.print(f"  [info]package:[/info] {build.package_id}")
    console.print(f"  [info]version:[/info] {build.version}")
    console.print(f"  [info]status:[/info] {build.status.value}")
    console.print(f"  [info]restarts:[/info] {build.restart_count}")
    if build.builder_id:
        console.print(f"  [info]builder:[/info] {build.builder_id}")
    if build.details:
        console.print(f"  [info]details:[/info] {build.details}")
    if depends:
        console.print(f"  [info]depends on:[/info] {', '.join(depends)}")
    return 0


def register_maintenance_parsers(subparsers: argparse._SubParsersAction) -> None:
    """Register init-db, retention and build-status subcommand parsers."""
    subparsers.add_parser("init-db", help="Create the database schema")
    subparsers.add_parser("retention", help="Remove expired build payloads and orphaned data")
    status_parser = subparsers.add_parser("build-status", help="Show a build's queue state")
    status_parser.add_argument("build_id", help="Build identifier")


def handle_maintenance_command(args: argparse.Namespace) -> int:
    """Handle init-db, retention and build-status subcommands."""
    if args.command == "init-db":
        return init_db_command()
    if args.command == "retention":
        return retention_command()
    return build_status_command(args.build_id)
