"""Small geographic helpers shared by the tracker and the ETA chain."""
from __future__ import annotations

import math
from typing import Iterable, Optional, Sequence

from runtrack.models import LngLat

_EARTH_RADIUS_M = 6_371_000.0


def haversine_m(a: LngLat, b: LngLat) -> float:
    """Return the great-circle distance in metres between *a* and *b*."""

    lat1_rad = math.radians(a.lat)
    lat2_rad = math.radians(b.lat)
    delta_lat = lat2_rad - lat1_rad
    delta_lon = math.radians(b.lng - a.lng)

    sin_lat = math.sin(delta_lat / 2.0)
    sin_lon = math.sin(delta_lon / 2.0)
    h = sin_lat ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * sin_lon ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return _EARTH_RADIUS_M * c


def next_stop_id(stop_ids: Sequence[str], completed: Iterable[str]) -> Optional[str]:
    """Return the first stop id in route order that is not completed."""

    done = set(completed)
    for stop_id in stop_ids:
        if stop_id not in done:
            return stop_id
    return None
