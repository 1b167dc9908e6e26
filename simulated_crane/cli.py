"""Command-line interface for simulated-crane."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import SimulatedCraneApp
from .config import CraneConfig, load_config
from .credentials import ConnectionString, ConnectionStringError

LOGGER = logging.getLogger(__name__)

_SECRET_KEYS = {"connection_string"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Simulated crane device reporting to Azure IoT Hub",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Connect to the hub and start sending telemetry")
    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def _mask_connection_string(value: str) -> str:
    try:
        return ConnectionString.parse(value).masked()
    except ConnectionStringError:
        return "<invalid>"


def print_config(config: CraneConfig) -> None:
    print(f"Configuration loaded from {config.path!s}\n")
    for section in config.raw.sections():
        print(f"[{section}]")
        for key, value in config.raw[section].items():
            if key in _SECRET_KEYS and value:
                value = _mask_connection_string(value)
            print(f"{key} = {value}")
        print()

    if config.hub.connection_string and not config.raw.get(
        "hub", "connection_string", fallback=""
    ):
        print(
            f"# connection string from {constants.CONNECTION_STRING_ENV}: "
            f"{_mask_connection_string(config.hub.connection_string)}"
        )


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        return SimulatedCraneApp.start(config)

    if args.command == "show-config":
        print_config(config)
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
