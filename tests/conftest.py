from __future__ import annotations

import sqlite3
import sys
from datetime import date
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from runtrack.db import ensure_schema  # noqa: E402
from runtrack.errors import DirectionsError  # noqa: E402
from runtrack.models import LngLat, RunDefinition, VehicleSnapshot  # noqa: E402
from runtrack.postcodes import assign_stop_ids  # noqa: E402
from runtrack.telemetry import norm_vehicle  # noqa: E402

BASE_PC = "B1 1BB"
STOP1_PC = "M1 1AE"
STOP2_PC = "LS10 1QN"

PLACES: Dict[str, LngLat] = {
    BASE_PC: LngLat(lng=-1.9000, lat=52.4800),
    STOP1_PC: LngLat(lng=-2.2300, lat=53.4800),
    STOP2_PC: LngLat(lng=-1.5300, lat=53.7700),
}


class FakeOrsClient:
    """Stands in for ``openrouteservice.Client`` with canned responses."""

    def __init__(
        self,
        places: Optional[Dict[str, LngLat]] = None,
        route: Optional[Callable[[list], dict]] = None,
    ) -> None:
        self.places = dict(PLACES if places is None else places)
        self.route = route or (
            lambda coords: {"routes": [{"summary": {"duration": 600.0, "distance": 10_000.0}}]}
        )
        self.geocode_calls: List[str] = []
        self.direction_calls: List[Tuple[list, str, str]] = []

    def pelias_search(self, text, country=None, layers=None, size=None, **kwargs):
        self.geocode_calls.append(text)
        coord = self.places.get(text)
        if coord is None:
            return {"features": []}
        return {"features": [{"geometry": {"coordinates": [coord.lng, coord.lat]}}]}

    def directions(self, coordinates, profile=None, format=None, **kwargs):
        self.direction_calls.append((coordinates, profile, format))
        return self.route(coordinates)


class FakeRoutes:
    """Route source returning queued ``(seconds, meters)`` legs, then a default."""

    def __init__(
        self,
        legs: Optional[List[Tuple[float, float]]] = None,
        default: Tuple[float, float] = (600.0, 10_000.0),
        fail_on: Optional[int] = None,
    ) -> None:
        self.legs = list(legs or [])
        self.default = default
        self.fail_on = fail_on
        self.calls: List[Tuple[LngLat, LngLat]] = []

    async def route(self, origin: LngLat, destination: LngLat) -> Tuple[float, float]:
        self.calls.append((origin, destination))
        if self.fail_on is not None and len(self.calls) == self.fail_on:
            raise DirectionsError("Directions lookup failed: boom")
        if self.legs:
            return self.legs.pop(0)
        return self.default


class FakePositions:
    def __init__(self, snapshot: Optional[VehicleSnapshot] = None) -> None:
        self.snapshot = snapshot
        self.error: Optional[Exception] = None
        self.calls = 0

    def move_to(self, coord: LngLat, vehicle: str = "AB12CDE") -> None:
        self.snapshot = VehicleSnapshot(vehicle=vehicle, lat=coord.lat, lng=coord.lng)

    async def fetch(self, vehicle: str) -> Optional[VehicleSnapshot]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.snapshot

    async def fetch_all(self, vehicles=None) -> Dict[str, VehicleSnapshot]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.snapshot is None:
            return {}
        return {norm_vehicle(self.snapshot.vehicle): self.snapshot}


def make_run(
    run_id: str = "run-1",
    *,
    run_date: date = date(2024, 1, 15),
    vehicle: str = "AB12CDE",
    raw_text: str = f"{STOP1_PC}\n{STOP2_PC}",
    start_time: str = "08:00",
    **overrides,
) -> RunDefinition:
    fields = dict(
        id=run_id,
        date=run_date,
        vehicle=vehicle,
        from_postcode=BASE_PC,
        to_postcode="",
        return_to_base=True,
        start_time=start_time,
        service_mins=25,
        include_breaks=True,
        raw_text=raw_text,
        stops=tuple(assign_stop_ids(raw_text)),
    )
    fields.update(overrides)
    return RunDefinition(**fields)


@pytest.fixture
def conn() -> sqlite3.Connection:
    connection = sqlite3.connect(":memory:")
    ensure_schema(connection)
    yield connection
    connection.close()
