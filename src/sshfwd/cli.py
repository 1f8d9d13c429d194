"""Command line entry point: ``sshfwd [--port N] ...``."""

import argparse
import sys
from collections.abc import Sequence

import uvicorn
from pydantic import ValidationError

from . import build_manager
from .api import create_app
from .common.logging import get_logger, setup_logging
from .config import DEFAULT_API_PORT, ForwarderSettings

logger = get_logger(__name__)


def _port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("Please specify a valid port number") from None
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError("Port must be between 1-65535")
    return port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshfwd",
        description="SSH port forwarding server with a REST API",
        epilog="Example: sshfwd --port 8080",
    )
    parser.add_argument(
        "-p", "--port", type=_port, default=DEFAULT_API_PORT,
        help=f"Port for the HTTP API (default: {DEFAULT_API_PORT})",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Address for the HTTP API")
    parser.add_argument("--ssh-config", help="Path to the ssh-config file with host aliases")
    parser.add_argument("--snapshot", help="Path to the saved forwards JSON file")
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--log-file", help="Also write logs to this file")
    return parser


def settings_from_args(args: argparse.Namespace) -> ForwarderSettings:
    overrides = {
        "api_host": args.host,
        "api_port": args.port,
        "log_level": args.log_level,
        "json_logs": args.json_logs,
    }
    if args.ssh_config:
        overrides["ssh_config_path"] = args.ssh_config
    if args.snapshot:
        overrides["snapshot_path"] = args.snapshot
    return ForwarderSettings(**overrides)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = settings_from_args(args)
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(
        level=settings.log_level,
        json_format=settings.json_logs,
        log_file=args.log_file,
    )

    manager = build_manager(settings)
    app = create_app(manager, api_port=settings.api_port)

    logger.info(
        "SSH Port Forwarding Server starting",
        url=f"http://{settings.api_host}:{settings.api_port}",
        ssh_config=str(settings.ssh_config_path),
        snapshot=str(settings.snapshot_path),
    )
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
