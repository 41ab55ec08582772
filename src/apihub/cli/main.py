from __future__ import annotations

import argparse
import logging
import sys

from apihub.cli.maintenance import handle_maintenance_command, register_maintenance_parsers
from apihub.cli.worker import handle_worker_command, register_worker_parser
from apihub.core.errors import main_with_error_handling
from apihub.logging import configure_logging

MAINTENANCE_COMMANDS = {"init-db", "retention", "build-status"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ApiHub build and publish pipeline")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines instead of console output",
    )
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    register_worker_parser(subparsers)
    register_maintenance_parsers(subparsers)
    return parser


def serve_command(host: str, port: int) -> int:
    import uvicorn

    uvicorn.run("apihub.api.main:app", host=host, port=port)
    return 0


@main_with_error_handling()
def run(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(
        logging.DEBUG if args.verbose else logging.INFO,
        json_output=args.json_logs,
    )

    if args.command == "serve":
        return serve_command(args.host, args.port)
    if args.command == "worker":
        return handle_worker_command(args)
    if args.command in MAINTENANCE_COMMANDS:
        return handle_maintenance_command(args)

    parser.print_help()
    return 0


def main(argv: list[str] | None = None) -> None:
    sys.exit(run(argv))


if __name__ == "__main__":
    main()
