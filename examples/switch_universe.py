#!/usr/bin/env python3
"""
Market Trend Stream - Universe Switching Showcase

Connects to the gRPC-Web proxy, streams the "All Stocks" universe for a few
seconds, then flips through several universes in quick succession. The
controller coalesces the burst of changes into a single restart with the
last selection.

Requires the data stream service behind an Envoy gRPC-Web proxy.

Usage:
    python examples/switch_universe.py [http://localhost:8080]
"""

from __future__ import annotations

import asyncio
import logging
import sys

import polars as pl

from markettrend.stream import (
    ControllerEvent,
    EventKind,
    SortKey,
    StreamClientConfig,
    SubscriptionController,
    SubscriptionParameters,
    TransportConfig,
    Universe,
)

# =============================================================================
# PART 1: Rendering
# =============================================================================


def render(event: ControllerEvent) -> None:
    """Print a short summary for every controller event."""
    snap = event.snapshot
    if event.kind == EventKind.BATCH and event.batch is not None:
        stats = snap.stats
        top = (
            event.batch.to_frame()
            .sort("percent_change", descending=True)
            .select(["code", "price", "change", "percent_change"])
            .head(3)
        )
        leaders = ", ".join(
            f"{row['code']} {row['percent_change']:+.2f}%" for row in top.iter_rows(named=True)
        )
        print(
            f"[{snap.parameters.filter}] #{snap.connection.message_count} "
            f"{stats.total} stocks ({stats.gainers} up / {stats.losers} down) | {leaders}"
        )
    elif event.kind == EventKind.ERROR:
        print(f"[!] {snap.connection.last_error}")
    else:
        print(f"-- {event.kind.value} ({snap.parameters.filter})")


def summarize(frames: list[pl.DataFrame]) -> None:
    if not frames:
        print("No data received.")
        return
    combined = pl.concat(frames)
    print(
        combined.group_by("code")
        .agg(pl.col("percent_change").last().alias("last_pct"), pl.len().alias("updates"))
        .sort("last_pct", descending=True)
        .head(10)
    )


# =============================================================================
# PART 2: Main
# =============================================================================


async def run(endpoint: str) -> int:
    config = StreamClientConfig(
        transport=TransportConfig(endpoint=endpoint),
        parameters=SubscriptionParameters(filter=Universe.ALL, sort_key=SortKey.PERCENT_CHANGE),
    )
    frames: list[pl.DataFrame] = []

    def collect(event: ControllerEvent) -> None:
        if event.kind == EventKind.BATCH and event.batch is not None:
            frames.append(event.batch.to_frame())

    async with SubscriptionController.from_config(config) as controller:
        controller.subscribe(render)
        controller.subscribe(collect)
        controller.connect()
        await asyncio.sleep(5)

        # Burst of changes: only the last one is opened
        for universe in (Universe.IDX30, Universe.LQ45, Universe.KOMPAS100):
            controller.set_parameters(SubscriptionParameters(filter=universe, sort_key=SortKey.VOLUME))
        await asyncio.sleep(5)

        stats = controller.get_stats()

    print(f"\nSessions opened: {stats['sessions_opened']}, anomalies: {stats['anomalies']}")
    summarize(frames)
    return 1 if stats["last_error"] else 0


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    endpoint = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8080"
    raise SystemExit(asyncio.run(run(endpoint)))


if __name__ == "__main__":
    main()
