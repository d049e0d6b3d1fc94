"""Per-run control loop: position -> geofence -> merge/persist -> ETA chain."""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from runtrack.config import TrackingSettings
from runtrack.errors import TransientLookupError
from runtrack.eta_chain import (
    ChainPoint,
    EtaChainOptions,
    EtaChainResult,
    RouteSource,
    build_eta_chain,
)
from runtrack.geocoding import GeocodeResolver
from runtrack.geofence import GeofenceTracker
from runtrack.models import (
    LngLat,
    RunDefinition,
    RunProgress,
    TickResult,
    VehicleSnapshot,
    parse_hhmm,
)
from runtrack.postcodes import normalize_postcode, rebase_progress
from runtrack.reconcile import (
    DebouncedProgressWriter,
    ImmediateProgressWriter,
    ManualAction,
    merge_run_progress,
    patch_missing_departures,
    stamp_transition,
)
from runtrack.run_duration import ChainedStart
from runtrack.store import ProgressStore
from runtrack.telemetry import PositionProvider

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RunOrchestrator:
    """Owns one run's progress and exposes ``tick`` and ``apply_manual_action``.

    The in-memory record is merged with the stored one at the start of every
    tick so completions written by other pollers show up here, and a write is
    submitted whenever the local record holds something the store does not.
    """

    def __init__(
        self,
        run: RunDefinition,
        *,
        store: ProgressStore,
        positions: PositionProvider,
        geocoder: GeocodeResolver,
        directions: RouteSource,
        settings: Optional[TrackingSettings] = None,
        clock: Optional[Clock] = None,
        immediate_writes: bool = False,
        patch_departures: bool = False,
        compute_eta: bool = True,
        chained_start: Optional[ChainedStart] = None,
    ) -> None:
        self.run = run
        self.store = store
        self.positions = positions
        self.geocoder = geocoder
        self.directions = directions
        self.settings = settings or TrackingSettings()
        self.clock = clock or utc_now
        self.patch_departures = patch_departures
        self.compute_eta = compute_eta
        self.chained_start = chained_start
        self.tracker = GeofenceTracker(self.settings)

        if immediate_writes:
            self.writer: DebouncedProgressWriter = ImmediateProgressWriter(
                store, run.id, on_saved=self._adopt
            )
        else:
            self.writer = DebouncedProgressWriter(
                store,
                run.id,
                delay_seconds=self.settings.save_debounce_seconds,
                on_saved=self._adopt,
            )

        self.record = store.load_progress(run.id)
        self._eta_chain: Optional[EtaChainResult] = None
        self._snapshot: Optional[VehicleSnapshot] = None
        self._lock = asyncio.Lock()
        self.result = TickResult(progress=self.record.progress, meta=self.record.meta)

    def _adopt(self, merged: RunProgress) -> None:
        self.record = merge_run_progress(self.record, merged)

    def _publish(
        self,
        status: str,
        last_error: Optional[str] = None,
        changed: bool = False,
    ) -> TickResult:
        self.result = TickResult(
            progress=self.record.progress,
            meta=dict(self.record.meta),
            eta_chain=self._eta_chain,
            vehicle_snapshot=self._snapshot,
            last_error=last_error,
            status=status,
            changed=changed,
        )
        return self.result

    def scheduled_start(self) -> datetime:
        tz = self.settings.tz
        if self.chained_start is not None:
            at = parse_hhmm(self.chained_start.start_time, self.run.start_time)
            return datetime.combine(self.run.date, at, tzinfo=tz)
        return self.run.scheduled_start(tz, self.settings.default_start_time)

    def _chain_options(self) -> EtaChainOptions:
        return EtaChainOptions.from_settings(
            self.settings,
            service_mins=self.run.service_mins,
            include_breaks=self.run.include_breaks,
            cutoff_time=self.run.close_time,
            reopen_time=self.run.open_time,
        )

    def _postcodes(self) -> List[str]:
        postcodes = [stop.postcode for stop in self.run.stops]
        for extra in (self.run.end_postcode, self._start_postcode()):
            if extra:
                postcodes.append(extra)
        return postcodes

    def _start_postcode(self) -> str:
        if self.chained_start is not None and self.chained_start.from_postcode:
            return normalize_postcode(self.chained_start.from_postcode)
        return self.run.from_postcode

    def _remaining_points(self, coords: Dict[str, LngLat]) -> List[ChainPoint]:
        points: List[ChainPoint] = []
        for stop in self.run.stops:
            if stop.id in self.record.progress.completed:
                continue
            coord = coords.get(stop.postcode)
            if coord is None:
                raise TransientLookupError(f"No coordinates for {stop.label} ({stop.postcode})")
            points.append(ChainPoint(stop.label, coord, stop.postcode, stop.id))
        return points

    def _end_point(self, coords: Dict[str, LngLat]) -> Optional[ChainPoint]:
        end_postcode = self.run.end_postcode
        if not end_postcode:
            return None
        coord = coords.get(end_postcode)
        if coord is None:
            logger.warning("Run %s: end postcode %s not resolved", self.run.id, end_postcode)
            return None
        return ChainPoint("End", coord, end_postcode)

    async def _build_chain(
        self,
        start_at: datetime,
        start_pos: LngLat,
        coords: Dict[str, LngLat],
        start_label: str,
    ) -> EtaChainResult:
        return await build_eta_chain(
            self.directions,
            start_at,
            start_pos,
            self._remaining_points(coords),
            end=self._end_point(coords),
            options=self._chain_options(),
            start_label=start_label,
        )

    def _reload_run(self) -> None:
        """Pick up edits to the stored definition, stop list included."""

        try:
            fresh = self.store.load_run(self.run.id)
        except sqlite3.Error as exc:
            logger.warning("Run %s: could not reload definition: %s", self.run.id, exc)
            return
        if fresh is None:
            return
        if fresh.stop_ids != self.run.stop_ids:
            logger.info("Run %s: stop list changed, rebasing progress", fresh.id)
        self.run = fresh

    def _rebase(self, record: RunProgress) -> RunProgress:
        progress, meta = rebase_progress(record.progress, dict(record.meta), self.run.stops)
        return RunProgress(progress=progress, meta=meta)

    def _refresh_from_store(self) -> Optional[RunProgress]:
        try:
            remote = self.store.load_progress(self.run.id)
        except sqlite3.Error as exc:
            logger.warning("Run %s: could not read stored progress: %s", self.run.id, exc)
            self.record = self._rebase(self.record)
            return None
        # Rebase after the union so a stop removed by an edit is not re-added.
        self.record = self._rebase(merge_run_progress(self.record, remote))
        return remote

    async def _scheduled_tick(self, start_at: datetime) -> TickResult:
        coords = await self.geocoder.resolve_many(self._postcodes())
        base = self._start_postcode()
        base_coord = coords.get(base) if base else None
        if base_coord is None:
            self._eta_chain = None
            return self._publish("scheduled", last_error=f"No coordinates for base {base or '-'}")
        try:
            self._eta_chain = await self._build_chain(start_at, base_coord, coords, "Base")
        except TransientLookupError as exc:
            logger.warning("Run %s: scheduled ETA unavailable: %s", self.run.id, exc)
            return self._publish("scheduled", last_error=str(exc))
        return self._publish("scheduled")

    async def tick(self) -> TickResult:
        async with self._lock:
            return await self._tick()

    async def _tick(self) -> TickResult:
        now = self.clock()
        now_ms = now.timestamp() * 1000
        self._reload_run()
        run = self.run

        if not run.vehicle:
            self._eta_chain = None
            return self._publish("no_vehicle")
        if not run.stops:
            self._eta_chain = None
            return self._publish("no_stops")

        start_at = self.scheduled_start()
        if now < start_at:
            if not self.compute_eta:
                return self._publish("scheduled")
            return await self._scheduled_tick(start_at)

        remote = self._refresh_from_store()

        try:
            snapshot = await self.positions.fetch(run.vehicle)
        except TransientLookupError as exc:
            logger.warning("Run %s: position unavailable: %s", run.id, exc)
            return self._publish("telemetry_error", last_error=str(exc))
        self._snapshot = snapshot

        coords = await self.geocoder.resolve_many(self._postcodes())

        previous = self.record.progress
        progress = self.tracker.evaluate(previous, run.stops, snapshot, coords, now_ms)
        meta = stamp_transition(previous, progress, self.record.meta, now_ms)
        self.record = RunProgress(progress=progress, meta=meta)
        if self.patch_departures:
            self.record = patch_missing_departures(self.record, now_ms)

        changed = remote is None or self.record != remote
        if changed:
            await self.writer.submit(self.record)

        if snapshot is None:
            self._eta_chain = None
            return self._publish("no_position", changed=changed)

        last_error: Optional[str] = None
        if not self.compute_eta:
            self._eta_chain = None
        else:
            try:
                self._eta_chain = await self._build_chain(
                    now, snapshot.position, coords, "Vehicle"
                )
            except TransientLookupError as exc:
                logger.warning("Run %s: ETA unavailable: %s", run.id, exc)
                last_error = str(exc)

        done = all(stop_id in self.record.progress.completed for stop_id in run.stop_ids)
        status = "all_done" if done else "tracking"
        if changed:
            status = "updated"
        return self._publish(status, last_error=last_error, changed=changed)

    async def apply_manual_action(self, action: ManualAction) -> TickResult:
        """Flush pending automatic changes, then apply *action* straight to the store."""

        async with self._lock:
            await self.writer.flush()
            now_ms = self.clock().timestamp() * 1000
            self.record = self.store.apply_manual(self.run.id, action, now_ms)
            return self._publish(f"manual_{action.kind}", changed=True)

    async def close(self) -> None:
        await self.writer.flush()


__all__ = ["Clock", "RunOrchestrator", "utc_now"]
