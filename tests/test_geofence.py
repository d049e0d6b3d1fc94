from __future__ import annotations

from runtrack.config import TrackingSettings
from runtrack.geofence import GeofenceTracker
from runtrack.models import LngLat, ProgressState, VehicleSnapshot, ms_to_iso
from runtrack.postcodes import assign_stop_ids
from runtrack.reconcile import stamp_transition

from conftest import PLACES, STOP1_PC, STOP2_PC

MINUTE = 60_000
T0 = 1_705_312_800_000.0  # 2024-01-15 10:00 UTC


def _snapshot(coord: LngLat) -> VehicleSnapshot:
    return VehicleSnapshot(vehicle="AB12CDE", lat=coord.lat, lng=coord.lng)


def _near(coord: LngLat) -> LngLat:
    # Roughly 100 m north of the stop.
    return LngLat(lng=coord.lng, lat=coord.lat + 0.0009)


def _far(coord: LngLat) -> LngLat:
    return LngLat(lng=coord.lng, lat=coord.lat + 0.05)


def _setup():
    stops = assign_stop_ids(f"{STOP1_PC}\n{STOP2_PC}")
    tracker = GeofenceTracker(TrackingSettings(completion_radius_m=800, min_standstill_mins=3))
    return tracker, stops


def test_completes_after_dwell_then_stamps_departure():
    tracker, stops = _setup()
    stop1 = PLACES[STOP1_PC]
    state = ProgressState.empty()
    meta = {}

    samples = [
        (T0, _near(stop1)),
        (T0 + 4 * MINUTE, stop1),
        (T0 + 5 * MINUTE, _far(stop1)),
    ]
    for now_ms, where in samples:
        new_state = tracker.evaluate(state, stops, _snapshot(where), PLACES, now_ms)
        meta = stamp_transition(state, new_state, meta, now_ms)
        state = new_state
        if now_ms == T0:
            assert state.on_site == stops[0].id
            assert state.on_site_since_ms == T0
            assert state.completed == frozenset()
            assert state.last_inside is True
        if now_ms == T0 + 4 * MINUTE:
            assert state.completed == frozenset({stops[0].id})
            assert state.on_site == stops[0].id

    assert state.completed == frozenset({stops[0].id})
    assert state.on_site is None
    assert state.on_site_since_ms is None
    assert state.last_inside is False
    assert meta[stops[0].id].arrived_iso == ms_to_iso(T0)
    assert meta[stops[0].id].at_iso == ms_to_iso(T0 + 5 * MINUTE)
    assert meta[stops[0].id].by == "auto"


def test_leaving_after_threshold_completes_on_exit_sample():
    tracker, stops = _setup()
    stop1 = PLACES[STOP1_PC]

    state = tracker.evaluate(ProgressState.empty(), stops, _snapshot(stop1), PLACES, T0)
    left = tracker.evaluate(state, stops, _snapshot(_far(stop1)), PLACES, T0 + 4 * MINUTE)
    meta = stamp_transition(state, left, {}, T0 + 4 * MINUTE)

    assert left.completed == frozenset({stops[0].id})
    assert left.on_site is None
    assert meta[stops[0].id].arrived_iso == ms_to_iso(T0)
    assert meta[stops[0].id].at_iso == ms_to_iso(T0 + 4 * MINUTE)


def test_short_dwell_never_completes():
    tracker, stops = _setup()
    stop1 = PLACES[STOP1_PC]

    state = tracker.evaluate(ProgressState.empty(), stops, _snapshot(stop1), PLACES, T0)
    state = tracker.evaluate(state, stops, _snapshot(stop1), PLACES, T0 + 2 * MINUTE)
    state = tracker.evaluate(state, stops, _snapshot(_far(stop1)), PLACES, T0 + 2 * MINUTE + 20_000)

    assert state.completed == frozenset()
    assert state.on_site is None
    assert state.on_site_since_ms is None


def test_dwell_just_under_threshold_never_completes_on_exit():
    tracker, stops = _setup()
    stop1 = PLACES[STOP1_PC]

    state = tracker.evaluate(ProgressState.empty(), stops, _snapshot(stop1), PLACES, T0)
    state = tracker.evaluate(state, stops, _snapshot(_far(stop1)), PLACES, T0 + 2.5 * MINUTE)

    assert state.completed == frozenset()
    assert state.on_site is None


def test_dwell_just_under_threshold_keeps_tracking_inside():
    tracker, stops = _setup()
    stop1 = PLACES[STOP1_PC]

    state = tracker.evaluate(ProgressState.empty(), stops, _snapshot(stop1), PLACES, T0)
    state = tracker.evaluate(state, stops, _snapshot(stop1), PLACES, T0 + 3 * MINUTE - 1)
    assert state.completed == frozenset()

    state = tracker.evaluate(state, stops, _snapshot(stop1), PLACES, T0 + 3 * MINUTE)
    assert state.completed == frozenset({stops[0].id})


def test_dwell_is_not_reset_while_inside():
    tracker, stops = _setup()
    stop1 = PLACES[STOP1_PC]

    state = tracker.evaluate(ProgressState.empty(), stops, _snapshot(stop1), PLACES, T0)
    state = tracker.evaluate(state, stops, _snapshot(_near(stop1)), PLACES, T0 + MINUTE)

    assert state.on_site_since_ms == T0


def test_missing_snapshot_is_a_no_op():
    tracker, stops = _setup()
    state = ProgressState(on_site=stops[0].id, on_site_since_ms=T0)

    assert tracker.evaluate(state, stops, None, PLACES, T0 + MINUTE) is state


def test_next_stop_without_coordinates_is_indeterminate():
    tracker, stops = _setup()
    state = ProgressState.empty()
    coords = {STOP2_PC: PLACES[STOP2_PC]}

    result = tracker.evaluate(state, stops, _snapshot(PLACES[STOP1_PC]), coords, T0)

    assert result is state


def test_departure_detected_after_all_stops_done():
    tracker, stops = _setup()
    stop2 = PLACES[STOP2_PC]
    state = ProgressState(
        completed=frozenset(stop.id for stop in stops),
        on_site=stops[1].id,
        on_site_since_ms=T0,
    )

    still_there = tracker.evaluate(state, stops, _snapshot(stop2), PLACES, T0 + MINUTE)
    gone = tracker.evaluate(still_there, stops, _snapshot(_far(stop2)), PLACES, T0 + 2 * MINUTE)

    assert still_there.on_site == stops[1].id
    assert still_there.last_inside is True
    assert gone.on_site is None
    assert gone.last_inside is False


def test_inside_flag_refreshed_when_nothing_is_tracked():
    tracker, stops = _setup()
    state = ProgressState(completed=frozenset(stop.id for stop in stops), last_inside=True)

    result = tracker.evaluate(state, stops, _snapshot(PLACES[STOP1_PC]), PLACES, T0)

    assert result.last_inside is False


def test_repeated_postcode_stops_complete_one_at_a_time():
    tracker = GeofenceTracker(TrackingSettings())
    stops = assign_stop_ids(f"{STOP1_PC}\n{STOP1_PC}")
    site = PLACES[STOP1_PC]

    state = tracker.evaluate(ProgressState.empty(), stops, _snapshot(site), PLACES, T0)
    state = tracker.evaluate(state, stops, _snapshot(site), PLACES, T0 + 3 * MINUTE)
    assert state.completed == frozenset({stops[0].id})

    state = tracker.evaluate(state, stops, _snapshot(site), PLACES, T0 + 4 * MINUTE)
    assert state.on_site == stops[1].id
    assert state.completed == frozenset({stops[0].id})
