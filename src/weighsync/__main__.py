"""Run a station from the environment and print live events as JSON lines.

Usage::

    MQTT_HOST=plc.local SERIAL_PORT=/dev/ttyUSB0 python -m weighsync --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys

from weighsync.config import StationConfig
from weighsync.exceptions import ConfigError
from weighsync.models.events import EventType
from weighsync.station import WeighStation

_logger = logging.getLogger("weighsync")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="weighsync", description="Run a weighsync station")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO).",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Skip hardware and run both channels on the simulator.",
    )
    parser.add_argument(
        "--events",
        nargs="*",
        default=None,
        metavar="TYPE",
        help="Only print these event types (e.g. sample.updated channel.status).",
    )
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    overrides = {}
    if args.simulate:
        overrides = {"controller": {"simulate": True}, "scale": {"simulate": True}}
    try:
        config = StationConfig.from_env(**overrides)
        types = [EventType(name) for name in args.events] if args.events else None
    except (ConfigError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop.set)

    async with WeighStation(config) as station:
        subscription = station.subscribe(types)

        async def _print_events() -> None:
            async for event in subscription:
                print(json.dumps(event.to_wire(), separators=(",", ":")), flush=True)

        printer = asyncio.create_task(_print_events())
        await stop.wait()
        subscription.close()
        await printer
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        _logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
