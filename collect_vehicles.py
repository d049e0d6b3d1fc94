#!/usr/bin/env python3
"""Collect the latest Webfleet vehicle positions into the SQLite database."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sqlite3
from collections.abc import Sequence

from runtrack.config import load_settings
from runtrack.db import DEFAULT_DB_PATH, connection_scope, ensure_schema
from runtrack.errors import TelemetryError
from runtrack.scheduler import PeriodicTask
from runtrack.telemetry import WebfleetPositionProvider, collect_vehicle_positions

logger = logging.getLogger("collect_vehicles")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Store current Webfleet vehicle positions")
    parser.add_argument("--db", default=DEFAULT_DB_PATH, help="Path to the SQLite database")
    parser.add_argument("--loop", action="store_true", help="Keep collecting on an interval")
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between collections when looping (defaults to the live poll interval)",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default INFO)")
    return parser.parse_args(argv)


async def collect(
    conn: sqlite3.Connection,
    provider: WebfleetPositionProvider,
    *,
    loop: bool,
    interval: float,
) -> int:
    if not loop:
        try:
            count = await collect_vehicle_positions(conn, provider)
        except TelemetryError as exc:
            logger.error("Collection failed: %s", exc)
            return 1
        print(f"Collected {count} vehicle position(s)")
        return 0

    task = PeriodicTask("collect-vehicles", interval, lambda: collect_vehicle_positions(conn, provider))
    task.start()
    try:
        await asyncio.Event().wait()
    finally:
        await task.stop()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    with connection_scope(args.db) as conn:
        ensure_schema(conn)
        interval = args.interval or load_settings(conn).live_poll_seconds
        try:
            return asyncio.run(
                collect(conn, WebfleetPositionProvider(), loop=args.loop, interval=interval)
            )
        except KeyboardInterrupt:
            logger.info("Stopped")
            return 0


if __name__ == "__main__":  # pragma: no cover - manual execution entry point
    raise SystemExit(main())
