"""Periodic polling: one task per observed run plus the batch sweep."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

from runtrack.config import TrackingSettings
from runtrack.errors import TransientLookupError
from runtrack.eta_chain import RouteSource
from runtrack.geocoding import GeocodeResolver
from runtrack.models import TickResult, VehicleSnapshot
from runtrack.orchestrator import Clock, RunOrchestrator, utc_now
from runtrack.run_duration import ChainedStart, compute_chained_starts, group_by_vehicle_day
from runtrack.store import ProgressStore
from runtrack.telemetry import PrefetchedPositionProvider

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Call an async function every ``interval_seconds`` until stopped.

    A failing call is logged and the loop carries on with the next interval.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)

    async def _loop(self) -> None:
        while True:
            try:
                await self.func()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception("Periodic task %s failed", self.name)
            self.runs += 1
            await asyncio.sleep(self.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


OrchestratorFactory = Callable[[str], Optional[RunOrchestrator]]


class LiveRunScheduler:
    """Poll each run only while something is observing it."""

    def __init__(
        self,
        factory: OrchestratorFactory,
        interval_seconds: float = 30.0,
    ) -> None:
        self.factory = factory
        self.interval_seconds = interval_seconds
        self._orchestrators: Dict[str, RunOrchestrator] = {}
        self._tasks: Dict[str, PeriodicTask] = {}
        self._observers: Dict[str, int] = {}

    def observe(self, run_id: str) -> Optional[RunOrchestrator]:
        orchestrator = self._orchestrators.get(run_id)
        if orchestrator is None:
            orchestrator = self.factory(run_id)
            if orchestrator is None:
                logger.warning("Run %s not found; nothing to observe", run_id)
                return None
            self._orchestrators[run_id] = orchestrator
            task = PeriodicTask(f"run-{run_id}", self.interval_seconds, orchestrator.tick)
            self._tasks[run_id] = task
            task.start()
        self._observers[run_id] = self._observers.get(run_id, 0) + 1
        return orchestrator

    async def release(self, run_id: str) -> None:
        remaining = self._observers.get(run_id, 0) - 1
        if remaining > 0:
            self._observers[run_id] = remaining
            return
        self._observers.pop(run_id, None)
        task = self._tasks.pop(run_id, None)
        orchestrator = self._orchestrators.pop(run_id, None)
        if task is not None:
            await task.stop()
        if orchestrator is not None:
            await orchestrator.close()

    def latest(self, run_id: str) -> Optional[TickResult]:
        orchestrator = self._orchestrators.get(run_id)
        return orchestrator.result if orchestrator is not None else None

    @property
    def observed(self) -> List[str]:
        return sorted(self._orchestrators)

    async def shutdown(self) -> None:
        for run_id in list(self._orchestrators):
            self._observers[run_id] = 1
            await self.release(run_id)


class BatchPositionSource(Protocol):
    async def fetch_all(
        self,
        vehicles: Optional[Iterable[str]] = None,
    ) -> Dict[str, VehicleSnapshot]:
        ...


@dataclass
class SweepReport:
    total: int = 0
    updated: int = 0
    deferred: int = 0
    geocoded_postcodes: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)

    def add(self, run_id: str, vehicle: str, status: str, error: Optional[str] = None) -> None:
        entry: Dict[str, Any] = {"runId": run_id, "vehicle": vehicle, "status": status}
        if error:
            entry["error"] = error
        self.results.append(entry)


def _chained_starts(runs, settings: TrackingSettings) -> Dict[str, ChainedStart]:
    chained: Dict[str, ChainedStart] = {}
    for group in group_by_vehicle_day(runs).values():
        if len(group) > 1:
            chained.update(compute_chained_starts(group, settings))
    return chained


async def run_sweep(
    conn: sqlite3.Connection,
    *,
    positions: BatchPositionSource,
    geocoder: GeocodeResolver,
    directions: RouteSource,
    settings: Optional[TrackingSettings] = None,
    clock: Optional[Clock] = None,
    today: Optional[date] = None,
) -> SweepReport:
    """Re-evaluate every active run once, within the sweep time budget."""

    cfg = settings or TrackingSettings()
    now_fn = clock or utc_now
    loop = asyncio.get_running_loop()
    started = loop.time()

    store = ProgressStore(conn)
    day = today or now_fn().astimezone(cfg.tz).date()
    runs = store.list_active_runs(day)
    report = SweepReport(total=len(runs))
    if not runs:
        logger.info("Sweep: no active runs")
        return report

    postcodes = [stop.postcode for run in runs for stop in run.stops]
    postcodes.extend(pc for run in runs for pc in (run.from_postcode, run.to_postcode) if pc)
    coords = await geocoder.resolve_many(postcodes)
    report.geocoded_postcodes = len(coords)

    try:
        snapshots = await positions.fetch_all([run.vehicle for run in runs])
    except TransientLookupError as exc:
        logger.warning("Sweep: vehicle positions unavailable: %s", exc)
        for run in runs:
            report.add(run.id, run.vehicle, "telemetry_error", str(exc))
        return report
    prefetched = PrefetchedPositionProvider(snapshots)
    chained = _chained_starts(runs, cfg)

    for run in runs:
        if loop.time() - started > cfg.sweep_budget_seconds:
            report.deferred += 1
            report.add(run.id, run.vehicle, "deferred")
            continue
        try:
            orchestrator = RunOrchestrator(
                run,
                store=store,
                positions=prefetched,
                geocoder=geocoder,
                directions=directions,
                settings=cfg,
                clock=now_fn,
                immediate_writes=True,
                patch_departures=True,
                compute_eta=False,
                chained_start=chained.get(run.id),
            )
            result = await orchestrator.tick()
        except sqlite3.Error as exc:
            logger.warning("Sweep: run %s failed: %s", run.id, exc)
            report.add(run.id, run.vehicle, "error", str(exc))
            continue
        if result.changed:
            report.updated += 1
        report.add(run.id, run.vehicle, result.status, result.last_error)

    if report.deferred:
        logger.info("Sweep: %d run(s) deferred to the next sweep", report.deferred)
    logger.info(
        "Sweep: %d run(s), %d updated, %d postcode(s) resolved",
        report.total,
        report.updated,
        report.geocoded_postcodes,
    )
    return report


__all__ = [
    "LiveRunScheduler",
    "PeriodicTask",
    "SweepReport",
    "run_sweep",
]
