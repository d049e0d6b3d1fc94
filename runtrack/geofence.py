"""Proximity and dwell based stop completion."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Mapping, Optional, Sequence

from runtrack.config import TrackingSettings
from runtrack.geo import haversine_m, next_stop_id
from runtrack.models import LngLat, ProgressState, Stop, VehicleSnapshot

logger = logging.getLogger(__name__)


class GeofenceTracker:
    """Decide arrival, completion and departure from one vehicle sample.

    ``coords`` maps normalised postcodes to coordinates. A stop whose postcode
    is missing from it is indeterminate: it never auto-completes.
    """

    def __init__(self, settings: Optional[TrackingSettings] = None) -> None:
        self.settings = settings or TrackingSettings()

    def _inside(self, vehicle: LngLat, coord: Optional[LngLat]) -> bool:
        if coord is None:
            return False
        return haversine_m(vehicle, coord) <= self.settings.completion_radius_m

    def _dwell_met(self, since_ms: Optional[float], now_ms: float) -> bool:
        if since_ms is None:
            return False
        # Raw elapsed time, never rounded.
        return now_ms - since_ms >= self.settings.min_standstill_mins * 60_000

    def evaluate(
        self,
        progress: ProgressState,
        stops: Sequence[Stop],
        snapshot: Optional[VehicleSnapshot],
        coords: Mapping[str, LngLat],
        now_ms: float,
    ) -> ProgressState:
        if snapshot is None:
            return progress

        vehicle = snapshot.position
        by_id = {stop.id: stop for stop in stops}
        state = progress
        next_id = next_stop_id([stop.id for stop in stops], state.completed)
        next_coord = coords.get(by_id[next_id].postcode) if next_id is not None else None
        if next_id is not None and next_coord is None:
            return progress

        # Departure from a stop completed earlier while the next one advanced.
        inside_tracked = False
        if state.on_site is not None and state.on_site != next_id:
            tracked = by_id.get(state.on_site)
            tracked_coord = coords.get(tracked.postcode) if tracked else None
            inside_tracked = self._inside(vehicle, tracked_coord)
            if not inside_tracked:
                logger.debug("Vehicle %s left stop %s", snapshot.vehicle, state.on_site)
                state = state.clear_dwell()

        if next_id is None:
            return replace(state, last_inside=inside_tracked)

        if self._inside(vehicle, next_coord):
            if state.on_site != next_id:
                state = state.begin_dwell(next_id, now_ms)
            elif self._dwell_met(state.on_site_since_ms, now_ms):
                state = state.with_completed(next_id)
            return replace(state, last_inside=True)

        if state.on_site == next_id:
            # A sample can land just after the vehicle pulled away.
            if self._dwell_met(state.on_site_since_ms, now_ms):
                state = state.with_completed(next_id)
            state = state.clear_dwell()
        return replace(state, last_inside=False)


__all__ = ["GeofenceTracker"]
