"""Vehicle position sources: the Webfleet report, the collected table, batches."""
from __future__ import annotations

import io
import logging
import math
import os
import re
import sqlite3
from typing import Dict, Iterable, Mapping, Optional, Protocol, Sequence

import httpx
import pandas as pd

from runtrack.db import utc_now_iso
from runtrack.errors import TelemetryError
from runtrack.models import VehicleSnapshot

logger = logging.getLogger(__name__)

WEBFLEET_BASE_URL = "https://csv.webfleet.com/extern"
MATCH_FIELDS = ("objectname", "objectno", "externalid", "description")

DMS_RE = re.compile(
    r"(\d+(?:\.\d+)?)\s*°\s*(\d+(?:\.\d+)?)\s*'\s*(\d+(?:\.\d+)?)\s*\"\s*([NSEW])",
    re.IGNORECASE,
)


class PositionProvider(Protocol):
    async def fetch(self, vehicle: str) -> Optional[VehicleSnapshot]:
        """Return the latest snapshot for *vehicle* or ``None`` when unknown."""


def env_any(*keys: str, environ: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    for key in keys:
        value = env.get(key)
        if value and str(value).strip():
            return str(value).strip()
    return ""


def strip_quotes(value: object) -> str:
    text = str(value if value is not None else "").strip()
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        return text[1:-1]
    return text


def norm_vehicle(value: object) -> str:
    """Normalise a registration / object name for matching."""

    return re.sub(r"\s+", "", strip_quotes(value).upper())


def to_float(value: object) -> Optional[float]:
    text = strip_quotes(value)
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def dms_to_decimal(value: object) -> Optional[float]:
    """Parse ``51°13'43.9" N`` style text into decimal degrees."""

    text = strip_quotes(value)
    if not text:
        return None
    match = DMS_RE.search(text)
    if not match:
        return None
    degrees, minutes, seconds = (float(match.group(i)) for i in (1, 2, 3))
    decimal = degrees + minutes / 60.0 + seconds / 3600.0
    if match.group(4).upper() in {"S", "W"}:
        decimal *= -1
    return decimal


def extract_lat_lng(row: Mapping[str, object]) -> Optional[tuple[float, float]]:
    lat_mdeg = to_float(row.get("latitude_mdeg"))
    lng_mdeg = to_float(row.get("longitude_mdeg"))
    if lat_mdeg is not None and lng_mdeg is not None:
        return lat_mdeg / 1_000_000, lng_mdeg / 1_000_000

    lat = dms_to_decimal(row.get("latitude"))
    lng = dms_to_decimal(row.get("longitude"))
    if lat is not None and lng is not None:
        return lat, lng
    return None


def parse_report(text: str) -> pd.DataFrame:
    """Parse a Webfleet CSV report; Webfleet uses ``;`` but ``,`` also occurs."""

    stripped = text.strip()
    if not stripped:
        return pd.DataFrame()
    header = stripped.splitlines()[0]
    delimiter = ";" if ";" in header else ","
    frame = pd.read_csv(
        io.StringIO(stripped),
        sep=delimiter,
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
    )
    frame.columns = [strip_quotes(column) for column in frame.columns]
    return frame


def parse_vehicle_row(row: Mapping[str, object]) -> Optional[VehicleSnapshot]:
    name = strip_quotes(row.get("objectname") or row.get("objectno") or "")
    coords = extract_lat_lng(row)
    if not name or coords is None:
        return None
    recorded_at = strip_quotes(row.get("pos_time") or row.get("msgtime") or "")
    return VehicleSnapshot(
        vehicle=norm_vehicle(name),
        lat=coords[0],
        lng=coords[1],
        speed_kph=to_float(row.get("speed")),
        heading=to_float(row.get("course")),
        recorded_at=recorded_at or None,
    )


def pick_vehicle_row(
    rows: Sequence[Mapping[str, object]],
    vehicle: str,
) -> Optional[Mapping[str, object]]:
    """Find *vehicle* by exact match first, then by substring, across name fields."""

    query = norm_vehicle(vehicle)
    if not query:
        return None
    for row in rows:
        if any(row.get(key) and norm_vehicle(row[key]) == query for key in MATCH_FIELDS):
            return row
    for row in rows:
        if any(row.get(key) and query in norm_vehicle(row[key]) for key in MATCH_FIELDS):
            return row
    return None


class WebfleetPositionProvider:
    """Fetch positions from the Webfleet ``showObjectReportExtern`` CSV report."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        account: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ) -> None:
        self.base_url = base_url or env_any("WEBFLEET_BASE_URL") or WEBFLEET_BASE_URL
        self.account = account or env_any("WEBFLEET_ACCOUNT")
        self.username = username or env_any("WEBFLEET_USERNAME")
        self.password = password or env_any("WEBFLEET_PASSWORD")
        self.api_key = api_key or env_any("WEBFLEET_API_KEY", "WEBFLEET_APIKEY")
        self._http_client = http_client
        self.timeout = timeout

    def _params(self) -> Dict[str, str]:
        if not all((self.account, self.username, self.password, self.api_key)):
            raise TelemetryError(
                "Missing Webfleet env vars. Need WEBFLEET_ACCOUNT, WEBFLEET_USERNAME, "
                "WEBFLEET_PASSWORD, WEBFLEET_API_KEY (or WEBFLEET_APIKEY)."
            )
        return {
            "lang": "en",
            "account": self.account,
            "username": self.username,
            "password": self.password,
            "apikey": self.api_key,
            "action": "showObjectReportExtern",
            "outputformat": "csv",
        }

    async def _get(self, params: Dict[str, str]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.get(self.base_url, params=params)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(self.base_url, params=params)

    async def fetch_report(self) -> pd.DataFrame:
        params = self._params()
        try:
            response = await self._get(params)
        except httpx.HTTPError as exc:
            raise TelemetryError(f"Webfleet request failed: {exc}") from exc
        if response.status_code >= 400:
            raise TelemetryError(f"Webfleet HTTP {response.status_code}: {response.text[:500]}")
        try:
            return parse_report(response.text)
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
            raise TelemetryError(f"Unreadable Webfleet report: {exc}") from exc

    async def fetch_all(
        self,
        vehicles: Optional[Iterable[str]] = None,
    ) -> Dict[str, VehicleSnapshot]:
        """Return one snapshot per vehicle; for duplicate rows the last one wins."""

        frame = await self.fetch_report()
        snapshots: Dict[str, VehicleSnapshot] = {}
        for row in frame.to_dict("records"):
            snapshot = parse_vehicle_row(row)
            if snapshot is not None:
                snapshots[snapshot.vehicle] = snapshot
        if vehicles is not None:
            wanted = {norm_vehicle(v) for v in vehicles}
            snapshots = {key: value for key, value in snapshots.items() if key in wanted}
        return snapshots

    async def fetch(self, vehicle: str) -> Optional[VehicleSnapshot]:
        frame = await self.fetch_report()
        row = pick_vehicle_row(frame.to_dict("records"), vehicle)
        if row is None:
            return None
        snapshot = parse_vehicle_row(row)
        if snapshot is None:
            logger.warning("Webfleet row for %s has no usable position", vehicle)
        return snapshot


class PrefetchedPositionProvider:
    """Serve snapshots from a batch fetched once, as the sweep does."""

    def __init__(self, snapshots: Mapping[str, VehicleSnapshot]) -> None:
        self._snapshots = {norm_vehicle(key): value for key, value in snapshots.items()}

    async def fetch(self, vehicle: str) -> Optional[VehicleSnapshot]:
        return self._snapshots.get(norm_vehicle(vehicle))

    def __len__(self) -> int:
        return len(self._snapshots)


def _snapshot_from_record(record: Mapping[str, object]) -> VehicleSnapshot:
    def _optional(value: object) -> Optional[float]:
        if value is None or (isinstance(value, float) and math.isnan(value)):
            return None
        return float(value)

    pos_time = record.get("pos_time")
    return VehicleSnapshot(
        vehicle=str(record["vehicle"]),
        lat=float(record["lat"]),
        lng=float(record["lng"]),
        speed_kph=_optional(record.get("speed_kph")),
        heading=_optional(record.get("heading")),
        recorded_at=pos_time if isinstance(pos_time, str) and pos_time else None,
    )


def load_vehicle_positions(
    conn: sqlite3.Connection,
    vehicles: Optional[Iterable[str]] = None,
) -> pd.DataFrame:
    """Return a DataFrame of the latest collected positions."""

    columns = ["vehicle", "lat", "lng", "speed_kph", "heading", "pos_time", "collected_at"]
    names = sorted({norm_vehicle(v) for v in vehicles or [] if norm_vehicle(v)})
    try:
        if vehicles is not None:
            if not names:
                return pd.DataFrame(columns=columns)
            placeholders = ",".join(["?"] * len(names))
            query = f"SELECT * FROM vehicle_positions WHERE vehicle IN ({placeholders})"
            return pd.read_sql_query(query, conn, params=names)
        return pd.read_sql_query("SELECT * FROM vehicle_positions", conn)
    except (pd.errors.DatabaseError, sqlite3.Error) as exc:
        raise TelemetryError(f"Could not read vehicle positions: {exc}") from exc


class SqlitePositionProvider:
    """Serve the positions written by :func:`collect_vehicle_positions`."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    async def fetch(self, vehicle: str) -> Optional[VehicleSnapshot]:
        frame = load_vehicle_positions(self.conn, [vehicle])
        if frame.empty:
            return None
        return _snapshot_from_record(frame.iloc[0].to_dict())

    async def fetch_all(
        self,
        vehicles: Optional[Iterable[str]] = None,
    ) -> Dict[str, VehicleSnapshot]:
        frame = load_vehicle_positions(self.conn, vehicles)
        return {
            str(record["vehicle"]): _snapshot_from_record(record)
            for record in frame.to_dict("records")
        }


async def collect_vehicle_positions(
    conn: sqlite3.Connection,
    provider: WebfleetPositionProvider,
) -> int:
    """Fetch every vehicle once and upsert the latest row per vehicle."""

    snapshots = await provider.fetch_all()
    if not snapshots:
        logger.info("Webfleet returned no vehicles with valid positions")
        return 0

    collected_at = utc_now_iso()
    payload = [
        (s.vehicle, s.lat, s.lng, s.speed_kph, s.heading, s.recorded_at, collected_at)
        for s in snapshots.values()
    ]
    conn.executemany(
        """
        INSERT INTO vehicle_positions (
            vehicle, lat, lng, speed_kph, heading, pos_time, collected_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(vehicle) DO UPDATE SET
            lat = excluded.lat,
            lng = excluded.lng,
            speed_kph = excluded.speed_kph,
            heading = excluded.heading,
            pos_time = excluded.pos_time,
            collected_at = excluded.collected_at
        """,
        payload,
    )
    conn.executemany(
        """
        INSERT INTO vehicle_position_log (
            vehicle, lat, lng, speed_kph, heading, pos_time, collected_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        payload,
    )
    conn.commit()
    logger.info("Collected %d vehicle positions", len(payload))
    return len(payload)


__all__ = [
    "PositionProvider",
    "PrefetchedPositionProvider",
    "SqlitePositionProvider",
    "WebfleetPositionProvider",
    "collect_vehicle_positions",
    "dms_to_decimal",
    "extract_lat_lng",
    "load_vehicle_positions",
    "norm_vehicle",
    "parse_report",
    "parse_vehicle_row",
    "pick_vehicle_row",
]
