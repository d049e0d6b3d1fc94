from __future__ import annotations

import asyncio

import pytest
from openrouteservice import exceptions as ors_exceptions

import runtrack.routing as routing
from runtrack.errors import DirectionsError
from runtrack.models import LngLat
from runtrack.routing import DirectionsResolver, normalize_leg

from conftest import FakeOrsClient

ORIGIN = LngLat(lng=-1.90, lat=52.48)
DESTINATION = LngLat(lng=-2.23, lat=53.48)


def test_normalize_leg_applies_multiplier():
    leg = normalize_leg(3600, 30_000, multiplier=1.5, max_speed_kph=88.5)

    assert leg.mins == 90
    assert leg.km == 30.0


def test_normalize_leg_floors_by_speed_ceiling():
    # 177 km at 88.5 km/h takes two hours whatever the router says.
    leg = normalize_leg(3600, 177_000, multiplier=1.0, max_speed_kph=88.5)

    assert leg.mins == 120


def test_normalize_leg_minimums_for_empty_route():
    leg = normalize_leg(0, 0, multiplier=1.15, max_speed_kph=88.5)

    assert leg.km == 0.1
    assert leg.mins == 1


def test_resolver_requests_hgv_profile_with_lng_lat_order():
    client = FakeOrsClient()
    resolver = DirectionsResolver(client=client, multiplier=1.0)

    leg = asyncio.run(resolver.drive_leg(ORIGIN, DESTINATION))

    coordinates, profile, fmt = client.direction_calls[0]
    assert coordinates == [[ORIGIN.lng, ORIGIN.lat], [DESTINATION.lng, DESTINATION.lat]]
    assert profile == "driving-hgv"
    assert fmt == "json"
    assert leg.mins == 10
    assert leg.km == 10.0


def test_resolver_treats_missing_summary_keys_as_zero():
    client = FakeOrsClient(route=lambda coords: {"routes": [{"summary": {}}]})
    resolver = DirectionsResolver(client=client)

    leg = asyncio.run(resolver.drive_leg(ORIGIN, ORIGIN))

    assert leg.km == 0.1
    assert leg.mins == 1


def test_resolver_wraps_api_errors():
    def fail(coords):
        raise ors_exceptions.ApiError(400, "bad request")

    resolver = DirectionsResolver(client=FakeOrsClient(route=fail))

    with pytest.raises(DirectionsError):
        asyncio.run(resolver.route(ORIGIN, DESTINATION))


def test_resolver_rejects_malformed_response():
    resolver = DirectionsResolver(client=FakeOrsClient(route=lambda coords: {"routes": []}))

    with pytest.raises(DirectionsError):
        asyncio.run(resolver.route(ORIGIN, DESTINATION))


def test_missing_api_key_is_a_directions_error(monkeypatch):
    monkeypatch.setattr(routing, "_ORS_CLIENT", None)
    monkeypatch.delenv("ORS_API_KEY", raising=False)

    with pytest.raises(DirectionsError, match="ORS_API_KEY"):
        asyncio.run(DirectionsResolver().route(ORIGIN, DESTINATION))
