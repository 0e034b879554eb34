"""Command-line interface for netdispatch."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .adapters import MQTTConnectionError
from .app import DispatchApp, OutcomeTimeout, ServiceRole, dispatch_command
from .config import ConfigurationError, load_config
from .core.models import Command, CommandType
from .logging import configure_logging
from .producer import DispatchError

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netdispatch", description="Remote command dispatch for network devices"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    start_parser = subparsers.add_parser("start", help="Start the netdispatch service")
    start_parser.add_argument(
        "--role",
        choices=[role.value for role in ServiceRole],
        default=ServiceRole.ALL.value,
        help="Components to run in this process (default: all)",
    )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    dispatch_parser = subparsers.add_parser(
        "dispatch", help="Publish a single command to the commands topic"
    )
    dispatch_parser.add_argument(
        "--type",
        dest="command_type",
        required=True,
        choices=[command_type.value for command_type in CommandType],
    )
    dispatch_parser.add_argument("--device", required=True, help="Device id")
    dispatch_parser.add_argument("--account", required=True, help="Account id")
    dispatch_parser.add_argument("--mac", required=True, help="Client MAC address")
    dispatch_parser.add_argument("--ip", help="Lease address (ADD_DHCP only)")
    dispatch_parser.add_argument("--pool", help="DHCP server name (ADD_DHCP only)")
    dispatch_parser.add_argument(
        "--track",
        action="store_true",
        help="Wait for the monitor service to report the terminal outcome",
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    if args.command == "start":
        try:
            DispatchApp.start(config, role=args.role)
        except MQTTConnectionError as exc:
            LOGGER.error("Service stopped: %s", exc)
            return 1
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key in ("password", "api_key") and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "dispatch":
        command_type = CommandType(args.command_type)
        if command_type is CommandType.ADD_LEASE and not (args.ip and args.pool):
            parser.error(f"{command_type.value} requires --ip and --pool")

        command = Command(
            type=command_type,
            device_id=args.device,
            account_id=args.account,
            mac_address=args.mac,
            ip_address=args.ip,
            pool_name=args.pool,
        )
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        try:
            command_id, outcome = asyncio.run(
                dispatch_command(config, command, track=args.track)
            )
        except (MQTTConnectionError, DispatchError) as exc:
            LOGGER.error("Dispatch failed: %s", exc)
            return 1
        except OutcomeTimeout as exc:
            LOGGER.error("%s; is a monitor service running?", exc)
            print(exc.command_id)
            return 1

        if outcome is None:
            print(command_id)
            return 0
        print(json.dumps(outcome.as_dict(), indent=2))
        return 0 if outcome.success else 1

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
