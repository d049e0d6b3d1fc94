"""Drive time lookups built around OpenRouteService."""
from __future__ import annotations

import asyncio
import logging
import math
import os
from dataclasses import dataclass
from typing import Optional

import openrouteservice as ors
import requests
from openrouteservice import exceptions as ors_exceptions

from runtrack.errors import DirectionsError
from runtrack.models import LngLat

logger = logging.getLogger(__name__)

DIRECTIONS_PROFILE = os.environ.get("ORS_PROFILE", "driving-hgv")
MIN_LEG_KM = 0.1

# Errors the ORS client surfaces for unreachable services and bad responses.
ORS_FAILURES = (
    ors_exceptions.ApiError,
    ors_exceptions.HTTPError,
    ors_exceptions.Timeout,
    requests.RequestException,
)

_ORS_CLIENT: Optional["ors.Client"] = None


def get_ors_client(client: Optional["ors.Client"] = None) -> "ors.Client":
    """Return an OpenRouteService client."""

    if client is not None:
        return client

    global _ORS_CLIENT
    if _ORS_CLIENT is None:
        api_key = os.environ.get("ORS_API_KEY")
        if not api_key:
            raise RuntimeError(
                "Set ORS_API_KEY env var (export ORS_API_KEY=YOUR_KEY)"
            )
        _ORS_CLIENT = ors.Client(key=api_key)
    return _ORS_CLIENT


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class DriveLeg:
    mins: int
    km: float


def normalize_leg(
    duration_s: float,
    distance_m: float,
    *,
    multiplier: float,
    max_speed_kph: float,
) -> DriveLeg:
    """Scale a car routing estimate to HGV reality.

    The routed duration is multiplied, then floored by the time the distance
    would take at ``max_speed_kph`` so a leg never implies a faster average.
    """

    km = max(MIN_LEG_KM, distance_m / 1000.0)
    routed_mins = max(1, _round_half_up(duration_s / 60.0 * multiplier))
    capped_mins = math.ceil(km / max_speed_kph * 60.0)
    return DriveLeg(mins=max(routed_mins, capped_mins), km=round(km, 1))


class DirectionsResolver:
    """Resolve normalised drive minutes and distance between two points."""

    def __init__(
        self,
        *,
        client: Optional["ors.Client"] = None,
        multiplier: float = 1.15,
        max_speed_kph: float = 88.5,
        profile: str = DIRECTIONS_PROFILE,
    ) -> None:
        self._client = client
        self.multiplier = multiplier
        self.max_speed_kph = max_speed_kph
        self.profile = profile

    @property
    def client(self) -> "ors.Client":
        return get_ors_client(self._client)

    def _route_summary(self, origin: LngLat, destination: LngLat) -> tuple[float, float]:
        try:
            client = self.client
        except RuntimeError as exc:
            raise DirectionsError(str(exc)) from exc
        try:
            route = client.directions(
                coordinates=[[origin.lng, origin.lat], [destination.lng, destination.lat]],
                profile=self.profile,
                format="json",
            )
        except ORS_FAILURES as exc:
            raise DirectionsError(f"Directions lookup failed: {exc}") from exc

        try:
            summary = route["routes"][0]["summary"]
            # ORS omits both keys for zero-length routes.
            seconds = float(summary.get("duration", 0.0))
            meters = float(summary.get("distance", 0.0))
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise DirectionsError("Directions response missing duration/distance") from exc
        if not (math.isfinite(seconds) and math.isfinite(meters)):
            raise DirectionsError("Directions response missing duration/distance")
        return seconds, meters

    async def route(self, origin: LngLat, destination: LngLat) -> tuple[float, float]:
        """Return raw routed ``(seconds, meters)`` between two points."""

        return await asyncio.to_thread(self._route_summary, origin, destination)

    async def drive_leg(self, origin: LngLat, destination: LngLat) -> DriveLeg:
        seconds, meters = await self.route(origin, destination)
        return normalize_leg(
            seconds,
            meters,
            multiplier=self.multiplier,
            max_speed_kph=self.max_speed_kph,
        )


__all__ = [
    "DIRECTIONS_PROFILE",
    "DirectionsResolver",
    "DriveLeg",
    "ORS_FAILURES",
    "get_ors_client",
    "normalize_leg",
]
