"""Postcode geocoding with an in-process memo and a shared SQLite cache."""
from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from typing import Dict, Iterable, List, Optional

import openrouteservice as ors

from runtrack.db import utc_now_iso
from runtrack.errors import GeocodeError
from runtrack.models import LngLat
from runtrack.postcodes import normalize_postcode
from runtrack.routing import ORS_FAILURES, get_ors_client

logger = logging.getLogger(__name__)

COUNTRY_DEFAULT = os.environ.get("ORS_COUNTRY", "GB")


def pelias_postcode(
    client: "ors.Client",
    postcode: str,
    country: str,
) -> LngLat:
    """Return the single best Pelias match for *postcode*."""

    try:
        res = client.pelias_search(
            text=postcode,
            country=country,
            layers=["postalcode"],
            size=1,
        )
    except ORS_FAILURES as exc:
        raise GeocodeError(f"Geocoding failed for {postcode}: {exc}") from exc

    features = (res or {}).get("features") or []
    if not features:
        raise GeocodeError(f"No geocode found for: {postcode}, {country}")
    try:
        lon, lat = features[0]["geometry"]["coordinates"][:2]
        return LngLat(lng=float(lon), lat=float(lat))
    except (KeyError, TypeError, ValueError) as exc:
        raise GeocodeError(f"Malformed geocode for: {postcode}") from exc


class GeocodeResolver:
    """Resolve postcodes to coordinates.

    Lookups go memo -> ``postcode_coords`` -> Pelias. Resolved coordinates are
    kept for the lifetime of the resolver and written back to the shared
    cache so other processes (the sweep, other viewers) reuse them.
    """

    def __init__(
        self,
        conn: Optional[sqlite3.Connection] = None,
        *,
        client: Optional["ors.Client"] = None,
        country: str = COUNTRY_DEFAULT,
    ) -> None:
        self.conn = conn
        self._client = client
        self.country = country
        self._memo: Dict[str, LngLat] = {}

    def cached(self, postcode: str) -> Optional[LngLat]:
        return self._memo.get(normalize_postcode(postcode))

    def _read_cache(self, postcodes: List[str]) -> None:
        if self.conn is None or not postcodes:
            return
        placeholders = ",".join(["?"] * len(postcodes))
        try:
            rows = self.conn.execute(
                f"SELECT postcode, lat, lng FROM postcode_coords WHERE postcode IN ({placeholders})",
                postcodes,
            ).fetchall()
        except sqlite3.Error as exc:
            logger.warning("Geocode cache read failed: %s", exc)
            return
        for postcode, lat, lng in rows:
            self._memo[postcode] = LngLat(lng=float(lng), lat=float(lat))

    def _write_cache(self, postcode: str, coord: LngLat) -> None:
        if self.conn is None:
            return
        try:
            self.conn.execute(
                """
                INSERT INTO postcode_coords (postcode, lat, lng, cached_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(postcode) DO NOTHING
                """,
                (postcode, coord.lat, coord.lng, utc_now_iso()),
            )
            self.conn.commit()
        except sqlite3.Error as exc:
            logger.warning("Geocode cache write failed for %s: %s", postcode, exc)

    async def resolve(self, postcode: str) -> LngLat:
        key = normalize_postcode(postcode)
        if not key:
            raise GeocodeError("Empty postcode")
        if key not in self._memo:
            self._read_cache([key])
        if key in self._memo:
            return self._memo[key]

        try:
            client = get_ors_client(self._client)
        except RuntimeError as exc:
            raise GeocodeError(str(exc)) from exc
        coord = await asyncio.to_thread(pelias_postcode, client, key, self.country)
        self._memo[key] = coord
        self._write_cache(key, coord)
        return coord

    async def resolve_many(self, postcodes: Iterable[str]) -> Dict[str, LngLat]:
        """Resolve every postcode it can; misses are logged and left out."""

        keys = list(dict.fromkeys(normalize_postcode(pc) for pc in postcodes if pc))
        keys = [key for key in keys if key]
        self._read_cache([key for key in keys if key not in self._memo])

        resolved: Dict[str, LngLat] = {}
        for key in keys:
            try:
                resolved[key] = await self.resolve(key)
            except GeocodeError as exc:
                logger.warning("Skipping postcode %s: %s", key, exc)
        return resolved


__all__ = [
    "COUNTRY_DEFAULT",
    "GeocodeResolver",
    "pelias_postcode",
]
