"""Leg-by-leg ETA projection across the stops a run still has to visit."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple
from zoneinfo import ZoneInfo

from runtrack.config import TrackingSettings
from runtrack.models import LngLat, parse_hhmm
from runtrack.routing import normalize_leg

logger = logging.getLogger(__name__)


class RouteSource(Protocol):
    async def route(self, origin: LngLat, destination: LngLat) -> Tuple[float, float]:
        """Return raw ``(seconds, meters)``; raise ``DirectionsError`` on failure."""


@dataclass(frozen=True)
class ChainPoint:
    label: str
    coord: LngLat
    postcode: Optional[str] = None
    stop_id: Optional[str] = None


@dataclass(frozen=True)
class EtaChainOptions:
    hgv_time_multiplier: float = 1.15
    max_speed_kph: float = 88.5
    include_breaks: bool = True
    max_drive_before_break_mins: int = 270
    break_mins: int = 45
    service_mins: int = 0
    cutoff_time: str = "17:00"
    reopen_time: str = "08:00"
    timezone: str = "Europe/London"

    @classmethod
    def from_settings(
        cls,
        settings: TrackingSettings,
        *,
        service_mins: Optional[int] = None,
        include_breaks: bool = True,
        cutoff_time: Optional[str] = None,
        reopen_time: Optional[str] = None,
    ) -> "EtaChainOptions":
        return cls(
            hgv_time_multiplier=settings.hgv_time_multiplier,
            max_speed_kph=settings.max_speed_kph,
            include_breaks=include_breaks,
            max_drive_before_break_mins=settings.max_drive_before_break_mins,
            break_mins=settings.break_mins,
            service_mins=settings.default_service_mins if service_mins is None else service_mins,
            cutoff_time=cutoff_time or settings.cutoff_time,
            reopen_time=reopen_time or settings.reopen_time,
            timezone=str(settings.tz),
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class EtaLeg:
    from_label: str
    to_label: str
    from_postcode: Optional[str]
    to_postcode: Optional[str]
    to_stop_id: Optional[str]
    km: float
    drive_mins: int
    break_mins: int
    service_mins: int
    depart_at: datetime
    arrive_at: datetime
    arrive_label: str

    @property
    def depart_hhmm(self) -> str:
        return _fmt_hhmm(self.depart_at)

    @property
    def arrive_hhmm(self) -> str:
        return _fmt_hhmm(self.arrive_at)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "fromLabel": self.from_label,
            "toLabel": self.to_label,
            "fromPostcode": self.from_postcode,
            "toPostcode": self.to_postcode,
            "stopId": self.to_stop_id,
            "km": self.km,
            "driveMins": self.drive_mins,
            "breakMins": self.break_mins,
            "serviceMins": self.service_mins,
            "departAtISO": self.depart_at.isoformat(),
            "arriveAtISO": self.arrive_at.isoformat(),
            "departAtHHMM": self.depart_hhmm,
            "arriveAtHHMM": self.arrive_hhmm,
            "arriveLabel": self.arrive_label,
        }


@dataclass(frozen=True)
class EtaChainResult:
    started_at: datetime
    legs: Tuple[EtaLeg, ...]
    total_km: float
    total_drive_mins: int
    total_break_mins: int
    total_service_mins: int
    total_mins: int
    final_arrive_at: datetime
    final_arrive_label: str
    final_position: Optional[LngLat] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "startedAtISO": self.started_at.isoformat(),
            "legs": [leg.to_payload() for leg in self.legs],
            "totalKm": self.total_km,
            "totalDriveMins": self.total_drive_mins,
            "totalBreakMins": self.total_break_mins,
            "totalServiceMins": self.total_service_mins,
            "totalMins": self.total_mins,
            "finalArriveAtISO": self.final_arrive_at.isoformat(),
            "finalArriveAtHHMM": _fmt_hhmm(self.final_arrive_at),
            "finalArriveLabel": self.final_arrive_label,
        }


def _fmt_hhmm(value: datetime) -> str:
    return value.strftime("%H:%M")


def _add_minutes(value: datetime, minutes: int, tz: ZoneInfo) -> datetime:
    # Elapsed time, so step in UTC and convert back for wall-clock checks.
    return (value.astimezone(timezone.utc) + timedelta(minutes=minutes)).astimezone(tz)


def _minutes_of_day(value: datetime) -> int:
    return value.hour * 60 + value.minute


def _next_day_at(value: datetime, at: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(value.date() + timedelta(days=1), at, tzinfo=tz)


def arrival_label(arrive_at: datetime, started_at: datetime, cutoff: time) -> str:
    """``HH:MM``, or ``Next day HH:MM`` for arrivals on a later day or at/after cutoff."""

    hhmm = _fmt_hhmm(arrive_at)
    cutoff_mins = cutoff.hour * 60 + cutoff.minute
    if arrive_at.date() != started_at.date() or _minutes_of_day(arrive_at) >= cutoff_mins:
        return f"Next day {hhmm}"
    return hhmm


async def build_eta_chain(
    directions: RouteSource,
    start_at: datetime,
    start_pos: LngLat,
    stops: Sequence[ChainPoint],
    end: Optional[ChainPoint] = None,
    options: Optional[EtaChainOptions] = None,
    start_label: str = "Vehicle",
) -> EtaChainResult:
    """Fold the waypoints ``[start, *stops, end?]`` into projected legs.

    Any leg lookup failure propagates, so a caller never sees a partial chain.
    """

    opts = options or EtaChainOptions()
    tz = opts.tz
    cutoff = parse_hhmm(opts.cutoff_time, "17:00")
    reopen = parse_hhmm(opts.reopen_time, "08:00")
    cutoff_mins = cutoff.hour * 60 + cutoff.minute
    started_at = start_at.astimezone(tz)

    if not stops:
        return EtaChainResult(
            started_at=started_at,
            legs=(),
            total_km=0.0,
            total_drive_mins=0,
            total_break_mins=0,
            total_service_mins=0,
            total_mins=0,
            final_arrive_at=started_at,
            final_arrive_label=arrival_label(started_at, started_at, cutoff),
            final_position=start_pos,
        )

    points: List[ChainPoint] = [ChainPoint(label=start_label, coord=start_pos)]
    points.extend(stops)
    if end is not None:
        points.append(end)
    stop_count = len(stops)

    legs: List[EtaLeg] = []
    cursor = started_at
    drive_since_break = 0
    total_km = 0.0
    total_drive = 0
    total_break = 0
    total_service = 0

    for position, (origin, destination) in enumerate(zip(points, points[1:])):
        seconds, meters = await directions.route(origin.coord, destination.coord)
        leg = normalize_leg(
            seconds,
            meters,
            multiplier=opts.hgv_time_multiplier,
            max_speed_kph=opts.max_speed_kph,
        )

        inserted_break = 0
        if opts.include_breaks:
            driven = drive_since_break + leg.mins
            if driven > opts.max_drive_before_break_mins:
                breaks = driven // opts.max_drive_before_break_mins
                inserted_break = breaks * opts.break_mins
                drive_since_break = driven - breaks * opts.max_drive_before_break_mins
            else:
                drive_since_break = driven
        total_break += inserted_break

        depart_at = cursor
        cursor = _add_minutes(cursor, leg.mins + inserted_break, tz)
        arrive_at = cursor

        service = 0
        # Service and working hours only apply on arrival at a real stop.
        if position < stop_count:
            if _minutes_of_day(arrive_at) >= cutoff_mins:
                arrive_at = _next_day_at(arrive_at, reopen, tz)
                cursor = arrive_at
                drive_since_break = 0
            service = opts.service_mins
            cursor = _add_minutes(cursor, service, tz)
            total_service += service
            if _minutes_of_day(cursor) >= cutoff_mins:
                cursor = _next_day_at(cursor, reopen, tz)
                drive_since_break = 0

        total_km += leg.km
        total_drive += leg.mins
        legs.append(
            EtaLeg(
                from_label=origin.label,
                to_label=destination.label,
                from_postcode=origin.postcode,
                to_postcode=destination.postcode,
                to_stop_id=destination.stop_id,
                km=leg.km,
                drive_mins=leg.mins,
                break_mins=inserted_break,
                service_mins=service,
                depart_at=depart_at,
                arrive_at=arrive_at,
                arrive_label=arrival_label(arrive_at, started_at, cutoff),
            )
        )

    final = legs[-1]
    return EtaChainResult(
        started_at=started_at,
        legs=tuple(legs),
        total_km=round(total_km, 1),
        total_drive_mins=total_drive,
        total_break_mins=total_break,
        total_service_mins=total_service,
        total_mins=total_drive + total_break + total_service,
        final_arrive_at=final.arrive_at,
        final_arrive_label=final.arrive_label,
        final_position=points[-1].coord,
    )


__all__ = [
    "ChainPoint",
    "EtaChainOptions",
    "EtaChainResult",
    "EtaLeg",
    "arrival_label",
    "build_eta_chain",
]
