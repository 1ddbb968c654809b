"""
mt CLI entrypoint.

Usage: mt watch --filter idx30 --sort percent_change --duration 30

Subcommands:
  watch     Subscribe to the market trend stream and print every update
  options   List the valid filters and sort keys

Options for watch:
  --config FILE         TOML client config (transport/controller/subscription sections)
  --endpoint URL        gRPC-Web endpoint (default http://localhost:8080)
  --filter NAME         Universe to subscribe to
  --sort KEY            Sort key
  --duration SECONDS    Stop after this many seconds (default: until the stream ends)
  --max-messages N      Stop after N messages
  --rows N              Rows of the table to print per update (0 = stats only)
  --events FILE         Append structured lifecycle events (JSONL) to FILE
  --set KEY=VALUE       Override a config entry (may be repeated)
  --log-level LEVEL     Logging level (default WARNING)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Optional, TextIO

from markettrend.config.config_loader import ConfigLoader, parse_overrides
from markettrend.ports.telemetry import Telemetry
from markettrend.stream.config import SortKey, StreamClientConfig, SubscriptionParameters, Universe
from markettrend.stream.controller import SubscriptionController
from markettrend.stream.errors import ConfigurationError, MarketStreamError
from markettrend.stream.transport import StreamTransport
from markettrend.stream.types import ControllerEvent, EventKind

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """
    Return the top-level CLI argument parser.
    """
    p = argparse.ArgumentParser(prog="mt", description="Market trend stream client")
    sub = p.add_subparsers(dest="command", required=True)

    watch = sub.add_parser("watch", help="Stream market trend updates")
    watch.add_argument("--config", type=Path, help="Path to a TOML client config")
    watch.add_argument("--endpoint", help="gRPC-Web endpoint URL")
    watch.add_argument(
        "--filter",
        choices=[u.value for u in Universe],
        help="Universe to subscribe to",
    )
    watch.add_argument(
        "--sort",
        choices=[s.value for s in SortKey],
        help="Sort key",
    )
    watch.add_argument("--duration", type=float, help="Stop after this many seconds")
    watch.add_argument("--max-messages", type=int, help="Stop after this many messages")
    watch.add_argument("--rows", type=int, default=10, help="Rows to print per update")
    watch.add_argument("--events", type=Path, help="JSONL file for lifecycle events")
    watch.add_argument(
        "--set",
        dest="config_overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config entry (may be repeated)",
    )
    watch.add_argument("--log-level", default="WARNING", help="Logging level")

    sub.add_parser("options", help="List filters and sort keys")
    return p


def resolve_config(args: argparse.Namespace) -> StreamClientConfig:
    """Config file, then --set overrides, then the dedicated flags."""
    loader = ConfigLoader()
    overrides = parse_overrides(args.config_overrides)
    config = loader.load_client_config(
        str(args.config) if args.config else None,
        overrides,
    )

    if args.endpoint:
        config = replace(config, transport=replace(config.transport, endpoint=args.endpoint))
    if args.filter is not None or args.sort is not None:
        config = replace(
            config,
            parameters=SubscriptionParameters(
                filter=args.filter if args.filter is not None else config.parameters.filter,
                sort_key=args.sort if args.sort is not None else config.parameters.sort_key,
            ),
        )
    return config


class UpdatePrinter:
    """Controller listener that renders updates as text."""

    def __init__(
        self,
        controller: SubscriptionController,
        out: TextIO,
        rows: int = 10,
        max_messages: Optional[int] = None,
    ) -> None:
        self._controller = controller
        self._out = out
        self._rows = rows
        self._max_messages = max_messages

    def __call__(self, event: ControllerEvent) -> None:
        snap = event.snapshot
        conn = snap.connection

        if event.kind == EventKind.CONNECTED:
            params = snap.parameters
            self._write(f"Connected ({params.filter or 'all'}, sorted by {params.sort_key})")
        elif event.kind == EventKind.BATCH:
            stats = snap.stats
            ts = conn.last_update.strftime("%H:%M:%S") if conn.last_update else "-"
            self._write(
                f"#{conn.message_count} {ts} total={stats.total} gainers={stats.gainers} "
                f"losers={stats.losers} unchanged={stats.unchanged}"
            )
            if self._rows > 0 and event.batch is not None:
                self._write(str(event.batch.to_frame().head(self._rows)))
        elif event.kind == EventKind.ANOMALY:
            self._write(f"[!] Skipped message #{conn.message_count}: {event.error}")
        elif event.kind == EventKind.ERROR:
            self._write(f"[!] {conn.last_error}")
        elif event.kind == EventKind.COMPLETED:
            self._write(f"Stream completed after {conn.message_count} messages")
        elif event.kind == EventKind.CANCELLED:
            self._write("Disconnected")

        if (
            event.kind == EventKind.BATCH
            and self._max_messages is not None
            and conn.message_count >= self._max_messages
        ):
            self._controller.disconnect()

    def _write(self, line: str) -> None:
        self._out.write(line + "\n")
        self._out.flush()


async def watch(
    config: StreamClientConfig,
    *,
    duration: Optional[float] = None,
    max_messages: Optional[int] = None,
    rows: int = 10,
    telemetry: Optional[Telemetry] = None,
    transport: Optional[StreamTransport] = None,
    out: TextIO = sys.stdout,
) -> int:
    """Run one subscription until it ends, the duration elapses or the budget is used."""
    if transport is None:
        controller = SubscriptionController.from_config(config, telemetry=telemetry)
    else:
        controller = SubscriptionController(
            transport,
            config.parameters,
            config.controller,
            telemetry=telemetry,
        )

    controller.subscribe(UpdatePrinter(controller, out, rows=rows, max_messages=max_messages))

    async with controller:
        controller.connect()
        try:
            await asyncio.wait_for(controller.wait_idle(), timeout=duration)
        except asyncio.TimeoutError:
            logger.info("Duration elapsed, disconnecting")
        last_error = controller.connection.last_error

    return 1 if last_error else 0


def print_options(out: TextIO = sys.stdout) -> int:
    out.write("Filters:\n")
    for universe in Universe:
        out.write(f"  {universe.value:<12} {universe.label}\n")
    out.write("Sort keys:\n")
    for key in SortKey:
        out.write(f"  {key.value:<15} {key.label}\n")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "options":
        return print_options()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        config = resolve_config(args)
    except (FileNotFoundError, ValueError, ConfigurationError) as exc:
        print(f"[!] {exc}")
        return 1

    telemetry: Optional[Telemetry] = None
    if args.events:
        from markettrend.adapters.telemetry.jsonl import JsonlTelemetry

        telemetry = JsonlTelemetry(run_id=str(uuid.uuid4()), sink_path=args.events)

    try:
        return asyncio.run(
            watch(
                config,
                duration=args.duration,
                max_messages=args.max_messages,
                rows=args.rows,
                telemetry=telemetry,
            )
        )
    except KeyboardInterrupt:
        print("Interrupted by user.")
        return 130
    except MarketStreamError as exc:
        print(f"[!] {exc}")
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
