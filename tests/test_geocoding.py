from __future__ import annotations

import asyncio

import pytest

import runtrack.routing as routing
from runtrack.errors import GeocodeError
from runtrack.geocoding import GeocodeResolver

from conftest import PLACES, STOP1_PC, STOP2_PC, FakeOrsClient


def test_resolve_normalises_and_memoises():
    client = FakeOrsClient()
    resolver = GeocodeResolver(client=client)

    first = asyncio.run(resolver.resolve("m11ae"))
    second = asyncio.run(resolver.resolve(" M1 1AE "))

    assert first == PLACES[STOP1_PC]
    assert second == first
    assert client.geocode_calls == [STOP1_PC]
    assert resolver.cached("m1 1ae") == first


def test_shared_cache_serves_other_resolvers(conn):
    client = FakeOrsClient()
    asyncio.run(GeocodeResolver(conn, client=client).resolve(STOP2_PC))

    other_client = FakeOrsClient(places={})
    coord = asyncio.run(GeocodeResolver(conn, client=other_client).resolve(STOP2_PC))

    assert coord == PLACES[STOP2_PC]
    assert other_client.geocode_calls == []
    row = conn.execute("SELECT lat, lng FROM postcode_coords WHERE postcode = ?", (STOP2_PC,)).fetchone()
    assert tuple(row) == (PLACES[STOP2_PC].lat, PLACES[STOP2_PC].lng)


def test_unknown_postcode_raises():
    resolver = GeocodeResolver(client=FakeOrsClient(places={}))

    with pytest.raises(GeocodeError, match="No geocode found"):
        asyncio.run(resolver.resolve("ZZ9 9ZZ"))


def test_resolve_many_skips_misses():
    client = FakeOrsClient()
    resolver = GeocodeResolver(client=client)

    resolved = asyncio.run(resolver.resolve_many([STOP1_PC, "ZZ9 9ZZ", "m1 1ae", "", STOP2_PC]))

    assert resolved == {STOP1_PC: PLACES[STOP1_PC], STOP2_PC: PLACES[STOP2_PC]}
    assert client.geocode_calls.count(STOP1_PC) == 1


def test_missing_api_key_is_a_geocode_error(monkeypatch):
    monkeypatch.setattr(routing, "_ORS_CLIENT", None)
    monkeypatch.delenv("ORS_API_KEY", raising=False)

    with pytest.raises(GeocodeError, match="ORS_API_KEY"):
        asyncio.run(GeocodeResolver().resolve(STOP1_PC))


def test_empty_postcode_is_rejected():
    with pytest.raises(GeocodeError):
        asyncio.run(GeocodeResolver(client=FakeOrsClient()).resolve("   "))
