"""Command-line interface for ptu-bridge."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .adapters import LinkTimeouts
from .app import PtuBridgeApp
from .config import PtuConfig, load_config
from .core import ProtocolLoadError, load_factory
from .logging import configure_logging
from .session import SessionManager

LOGGER = logging.getLogger(__name__)

_MASKED_OPTIONS = {("broker", "password")}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ptu-bridge", description="MQTT bridge for serial pan-tilt units"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    start_parser = subparsers.add_parser("start", help="Start the ptu-bridge service")
    probe_parser = subparsers.add_parser(
        "probe", help="Connect once, print the unit's calibration and exit"
    )
    for sub in (start_parser, probe_parser):
        sub.add_argument("--port", help="Override the serial port or pyserial URL")
        sub.add_argument(
            "--dry-run",
            action="store_true",
            help="Keep the session up even if the unit fails to initialise",
        )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def _apply_overrides(config: PtuConfig, args: argparse.Namespace) -> None:
    if args.port:
        config.serial.port = args.port
        config.raw.set("serial", "port", args.port)
    if args.dry_run:
        config.device.dry_run = True
        config.raw.set("device", "dry_run", "true")


async def probe(config: PtuConfig) -> int:
    """Run a single connect/disconnect cycle against the configured unit."""
    try:
        factory = load_factory(config.device.protocol)
    except ProtocolLoadError as exc:
        LOGGER.error("Cannot load device driver: %s", exc)
        return 1

    manager = SessionManager(protocol_factory=factory)
    result = await manager.connect(
        config.serial.port,
        config.serial.baud,
        LinkTimeouts(
            read=config.serial.timeout_seconds,
            write=config.serial.write_timeout_seconds,
            connect=config.serial.connect_timeout_seconds,
        ),
        limits_enabled=config.device.limits_enabled,
        dry_run=config.device.dry_run,
    )
    if not result:
        print(f"Probe failed: {result.error}", file=sys.stderr)
        return 1

    try:
        print(f"Connected to {config.serial.port}" + (" (dry run)" if result.dry_run else ""))
        for axis, calibration in sorted(manager.calibration.items()):
            for key, value in calibration.as_params(axis).items():
                print(f"{key} = {value:.6f}")
    finally:
        manager.disconnect()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        _apply_overrides(config, args)
        PtuBridgeApp.start(config)
        return 0

    if args.command == "probe":
        _apply_overrides(config, args)
        configure_logging(config.logging.level, log_path=config.logging.path)
        return asyncio.run(probe(config))

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if value and (section, key) in _MASKED_OPTIONS:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
