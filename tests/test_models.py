from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

from runtrack.models import (
    CompletedMeta,
    ProgressState,
    RunDefinition,
    decode_meta,
    decode_stops,
    encode_meta,
    ms_to_iso,
)
from runtrack.postcodes import assign_stop_ids


def _stops():
    return assign_stop_ids("SW1A 1AA\nM1 1AE\nLS10 1QN")


def test_progress_from_malformed_payload_is_empty():
    assert ProgressState.from_payload(None) == ProgressState.empty()
    assert ProgressState.from_payload("nope") == ProgressState.empty()
    state = ProgressState.from_payload({"completed": "x", "onSite": 3, "lastInside": "yes"})
    assert state == ProgressState.empty()


def test_progress_from_legacy_index_payload():
    stops = _stops()
    payload = {"completedIdx": [0, 7], "onSiteIdx": 1, "onSiteSinceMs": 1_000, "lastInside": True}

    state = ProgressState.from_payload(payload, stops)

    assert state.completed == frozenset({stops[0].id})
    assert state.on_site == stops[1].id
    assert state.on_site_since_ms == 1_000.0
    assert state.last_inside is True
    assert state.completed_indexes(stops) == [0]


def test_progress_dwell_fields_are_set_together():
    stops = _stops()
    state = ProgressState.from_payload({"onSite": stops[0].id, "onSiteSinceMs": None}, stops)

    assert state.on_site is None
    assert state.on_site_since_ms is None


def test_progress_payload_decodes_to_same_state():
    stops = _stops()
    state = ProgressState(
        completed=frozenset({stops[0].id, stops[2].id}),
        on_site=stops[1].id,
        on_site_since_ms=1_700_000_000_000.0,
        last_inside=True,
    )

    assert ProgressState.from_payload(state.to_payload(), stops) == state


def test_completed_meta_repairs_departure_without_arrival():
    entry = CompletedMeta.from_payload({"by": "robot", "atISO": "2024-01-15T10:05:00+00:00"})

    assert entry.by == "auto"
    assert entry.arrived_iso == "2024-01-15T10:05:00+00:00"
    assert entry.at_iso == "2024-01-15T10:05:00+00:00"


def test_decode_meta_maps_legacy_index_keys():
    stops = _stops()
    payload = {
        "1": {"by": "admin", "atISO": "2024-01-15T10:00:00+00:00"},
        stops[2].id: {"by": "auto", "arrivedISO": "2024-01-15T11:00:00+00:00"},
        "9": {"by": "auto"},
        "junk": "not a mapping",
    }

    meta = decode_meta(payload, stops)

    assert set(meta) == {stops[1].id, stops[2].id}
    assert meta[stops[1].id].by == "admin"
    assert encode_meta(meta)[stops[2].id] == {
        "by": "auto",
        "arrivedISO": "2024-01-15T11:00:00+00:00",
    }


def test_decode_stops_skips_invalid_entries():
    stops = decode_stops(
        [
            {"id": "a", "postcode": "SW1A 1AA", "bookingTime": "09:00"},
            {"postcode": "M1 1AE"},
            "bad",
            {"id": "c", "postcode": "LS10 1QN"},
        ]
    )

    assert [(stop.id, stop.index) for stop in stops] == [("a", 0), ("c", 1)]
    assert stops[0].booking_time == "09:00"


def test_run_definition_end_and_start():
    tz = ZoneInfo("Europe/London")
    run = RunDefinition(
        id="r1",
        date=date(2024, 6, 3),
        from_postcode="B1 1BB",
        to_postcode="LS10 1QN",
        start_time="07:45",
    )

    assert run.end_postcode == "B1 1BB"
    assert RunDefinition(id="r2", date=run.date, to_postcode="M1 1AE", return_to_base=False).end_postcode == "M1 1AE"
    assert run.scheduled_start(tz) == datetime(2024, 6, 3, 7, 45, tzinfo=tz)
    broken = RunDefinition(id="r3", date=run.date, start_time="late")
    assert broken.scheduled_start(tz, "08:30") == datetime(2024, 6, 3, 8, 30, tzinfo=tz)


def test_ms_to_iso_is_utc():
    assert ms_to_iso(0) == "1970-01-01T00:00:00+00:00"
