"""Typed records for run execution state and their JSON payload codecs."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

if TYPE_CHECKING:
    from runtrack.eta_chain import EtaChainResult

COMPLETED_BY = ("auto", "admin", "driver")


@dataclass(frozen=True)
class LngLat:
    lng: float
    lat: float


@dataclass(frozen=True)
class Stop:
    """One delivery point on a run.

    ``id`` is assigned when the raw stop list is parsed and survives edits to
    the list; ``index`` is the current position and changes with edits.
    """

    id: str
    index: int
    postcode: str
    booking_time: Optional[str] = None
    reference: Optional[str] = None

    @property
    def label(self) -> str:
        return f"Stop {self.index + 1}"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "postcode": self.postcode,
            "bookingTime": self.booking_time,
            "reference": self.reference,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], index: int) -> Optional["Stop"]:
        stop_id = payload.get("id")
        postcode = payload.get("postcode")
        if not isinstance(stop_id, str) or not isinstance(postcode, str):
            return None
        booking_time = payload.get("bookingTime")
        reference = payload.get("reference")
        return cls(
            id=stop_id,
            index=index,
            postcode=postcode,
            booking_time=booking_time if isinstance(booking_time, str) else None,
            reference=reference if isinstance(reference, str) else None,
        )


def decode_stops(payload: Any) -> List[Stop]:
    if not isinstance(payload, list):
        return []
    stops: List[Stop] = []
    for item in payload:
        if not isinstance(item, Mapping):
            continue
        stop = Stop.from_payload(item, len(stops))
        if stop is not None:
            stops.append(stop)
    return stops


@dataclass(frozen=True)
class VehicleSnapshot:
    """A single telemetry reading. Never persisted by the tracker."""

    vehicle: str
    lat: float
    lng: float
    speed_kph: Optional[float] = None
    heading: Optional[float] = None
    recorded_at: Optional[str] = None

    @property
    def position(self) -> LngLat:
        return LngLat(lng=self.lng, lat=self.lat)


def _coerce_ms(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _legacy_index_to_id(value: Any, stops: Sequence[Stop]) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if 0 <= value < len(stops):
        return stops[value].id
    return None


@dataclass(frozen=True)
class ProgressState:
    """Authoritative execution state of one run, keyed by stop id."""

    completed: frozenset = field(default_factory=frozenset)
    on_site: Optional[str] = None
    on_site_since_ms: Optional[float] = None
    last_inside: bool = False

    @classmethod
    def empty(cls) -> "ProgressState":
        return cls()

    def clear_dwell(self) -> "ProgressState":
        return replace(self, on_site=None, on_site_since_ms=None)

    def begin_dwell(self, stop_id: str, now_ms: float) -> "ProgressState":
        return replace(self, on_site=stop_id, on_site_since_ms=now_ms)

    def with_completed(self, stop_id: str) -> "ProgressState":
        if stop_id in self.completed:
            return self
        return replace(self, completed=self.completed | {stop_id})

    def completed_indexes(self, stops: Sequence[Stop]) -> List[int]:
        return [stop.index for stop in stops if stop.id in self.completed]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "completed": sorted(self.completed),
            "onSite": self.on_site,
            "onSiteSinceMs": self.on_site_since_ms,
            "lastInside": self.last_inside,
        }

    @classmethod
    def from_payload(cls, payload: Any, stops: Sequence[Stop] = ()) -> "ProgressState":
        """Decode a stored payload; anything malformed falls back to empty."""

        if not isinstance(payload, Mapping):
            return cls.empty()

        completed: set = set()
        raw_completed = payload.get("completed")
        if isinstance(raw_completed, list):
            completed.update(item for item in raw_completed if isinstance(item, str))
        # Rows written before stop ids existed carry positional indexes.
        legacy_completed = payload.get("completedIdx")
        if isinstance(legacy_completed, list):
            for item in legacy_completed:
                stop_id = _legacy_index_to_id(item, stops)
                if stop_id is not None:
                    completed.add(stop_id)

        on_site = payload.get("onSite")
        if not isinstance(on_site, str):
            on_site = _legacy_index_to_id(payload.get("onSiteIdx"), stops)

        since = _coerce_ms(payload.get("onSiteSinceMs"))
        if on_site is None or since is None:
            on_site, since = None, None

        return cls(
            completed=frozenset(completed),
            on_site=on_site,
            on_site_since_ms=since,
            last_inside=payload.get("lastInside") is True,
        )


def ms_to_iso(ms: float) -> str:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class CompletedMeta:
    by: str = "auto"
    arrived_iso: Optional[str] = None
    at_iso: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"by": self.by}
        if self.arrived_iso:
            payload["arrivedISO"] = self.arrived_iso
        if self.at_iso:
            payload["atISO"] = self.at_iso
        return payload

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["CompletedMeta"]:
        if not isinstance(payload, Mapping):
            return None
        by = payload.get("by")
        if by not in COMPLETED_BY:
            by = "auto"
        arrived = payload.get("arrivedISO")
        at = payload.get("atISO")
        arrived = arrived if isinstance(arrived, str) and arrived else None
        at = at if isinstance(at, str) and at else None
        if at and not arrived:
            arrived = at
        return cls(by=by, arrived_iso=arrived, at_iso=at)


def decode_meta(payload: Any, stops: Sequence[Stop] = ()) -> Dict[str, CompletedMeta]:
    if not isinstance(payload, Mapping):
        return {}
    by_id = {stop.id for stop in stops}
    decoded: Dict[str, CompletedMeta] = {}
    for key, value in payload.items():
        entry = CompletedMeta.from_payload(value)
        if entry is None:
            continue
        stop_id: Optional[str] = key if isinstance(key, str) else None
        if stop_id is not None and stop_id not in by_id and stop_id.isdigit():
            stop_id = _legacy_index_to_id(int(stop_id), stops)
        elif isinstance(key, int):
            stop_id = _legacy_index_to_id(key, stops)
        if stop_id is not None:
            decoded[stop_id] = entry
    return decoded


def encode_meta(meta: Mapping[str, CompletedMeta]) -> Dict[str, Dict[str, Any]]:
    return {stop_id: meta[stop_id].to_payload() for stop_id in sorted(meta)}


@dataclass(frozen=True)
class RunProgress:
    """Progress plus completion metadata: the durable shared record of a run."""

    progress: ProgressState = field(default_factory=ProgressState)
    meta: Mapping[str, CompletedMeta] = field(default_factory=dict)


def parse_hhmm(value: Optional[str], fallback: str) -> time:
    for candidate in (value, fallback):
        if not candidate:
            continue
        try:
            hours, minutes = candidate.split(":")
            return time(int(hours), int(minutes))
        except ValueError:
            continue
    return time(8, 0)


@dataclass(frozen=True)
class RunDefinition:
    """Read-only view of a scheduled run as defined by the planning screens."""

    id: str
    date: date
    vehicle: str = ""
    from_postcode: str = ""
    to_postcode: str = ""
    return_to_base: bool = True
    start_time: str = "08:00"
    service_mins: int = 25
    include_breaks: bool = True
    open_time: Optional[str] = None
    close_time: Optional[str] = None
    raw_text: str = ""
    stops: Tuple[Stop, ...] = ()
    job_number: str = ""
    load_ref: str = ""
    customer: str = ""

    @property
    def stop_ids(self) -> List[str]:
        return [stop.id for stop in self.stops]

    @property
    def end_postcode(self) -> Optional[str]:
        if self.return_to_base:
            return self.from_postcode or None
        return self.to_postcode or None

    def stop_by_id(self, stop_id: str) -> Optional[Stop]:
        for stop in self.stops:
            if stop.id == stop_id:
                return stop
        return None

    def scheduled_start(self, tz: ZoneInfo, default_start: str = "08:00") -> datetime:
        return datetime.combine(self.date, parse_hhmm(self.start_time, default_start), tzinfo=tz)


@dataclass
class TickResult:
    """What one orchestrator tick exposes to the UI/report layer."""

    progress: ProgressState
    meta: Mapping[str, CompletedMeta]
    eta_chain: Optional["EtaChainResult"] = None
    vehicle_snapshot: Optional[VehicleSnapshot] = None
    last_error: Optional[str] = None
    status: str = "idle"
    changed: bool = False


__all__ = [
    "COMPLETED_BY",
    "CompletedMeta",
    "LngLat",
    "ProgressState",
    "RunDefinition",
    "RunProgress",
    "Stop",
    "TickResult",
    "VehicleSnapshot",
    "decode_meta",
    "decode_stops",
    "encode_meta",
    "ms_to_iso",
    "parse_hhmm",
]
