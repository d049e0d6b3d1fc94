#!/usr/bin/env python3
"""Sweep every active run and persist stop progress.

Runs nobody has open still complete: each sweep reads the latest vehicle
positions, applies the geofence rules and merges the result into the stored
progress of every run for today (and yesterday's unfinished runs).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sqlite3
from collections.abc import Sequence
from dataclasses import asdict

from runtrack.config import TrackingSettings, bootstrap_settings, load_settings
from runtrack.db import DEFAULT_DB_PATH, connection_scope, ensure_schema
from runtrack.geocoding import GeocodeResolver
from runtrack.routing import DirectionsResolver
from runtrack.scheduler import PeriodicTask, SweepReport, run_sweep
from runtrack.telemetry import SqlitePositionProvider, WebfleetPositionProvider

logger = logging.getLogger("update_progress")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Update run progress from vehicle positions")
    parser.add_argument("--db", default=DEFAULT_DB_PATH, help="Path to the SQLite database")
    parser.add_argument(
        "--source",
        choices=("sqlite", "webfleet"),
        default="sqlite",
        help="Read collected positions from the database or query Webfleet directly",
    )
    parser.add_argument("--loop", action="store_true", help="Keep sweeping on an interval")
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between sweeps when looping (defaults to the stored setting)",
    )
    parser.add_argument(
        "--init-params",
        action="store_true",
        help="Store the default tracking parameters if they are missing",
    )
    parser.add_argument("--json", action="store_true", help="Print each sweep report as JSON")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default INFO)")
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def run_sweeps(
    conn: sqlite3.Connection,
    args: argparse.Namespace,
    settings: TrackingSettings,
) -> SweepReport:
    geocoder = GeocodeResolver(conn)
    directions = DirectionsResolver(
        multiplier=settings.hgv_time_multiplier,
        max_speed_kph=settings.max_speed_kph,
    )
    positions = WebfleetPositionProvider() if args.source == "webfleet" else SqlitePositionProvider(conn)
    last: list[SweepReport] = []

    async def sweep() -> None:
        report = await run_sweep(
            conn,
            positions=positions,
            geocoder=geocoder,
            directions=directions,
            settings=settings,
        )
        last[:] = [report]
        if args.json:
            print(json.dumps(asdict(report)))

    if not args.loop:
        await sweep()
        return last[0]

    task = PeriodicTask("sweep", args.interval or settings.sweep_interval_seconds, sweep)
    task.start()
    try:
        await asyncio.Event().wait()
    finally:
        await task.stop()
    return last[0] if last else SweepReport()


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    with connection_scope(args.db) as conn:
        ensure_schema(conn)
        if args.init_params:
            bootstrap_settings(conn)
        settings = load_settings(conn)
        try:
            report = asyncio.run(run_sweeps(conn, args, settings))
        except KeyboardInterrupt:
            logger.info("Stopped")
            return 0

    if not args.json:
        print(
            f"{report.total} active run(s), {report.updated} updated, "
            f"{report.deferred} deferred"
        )
    return 0


if __name__ == "__main__":  # pragma: no cover - manual execution entry point
    raise SystemExit(main())
