from __future__ import annotations

from runtrack.models import CompletedMeta, ProgressState
from runtrack.postcodes import (
    assign_stop_ids,
    extract_postcode,
    normalize_postcode,
    parse_stop_lines,
    parse_stops,
    rebase_progress,
)

A, B, C, D = "SW1A 1AA", "M1 1AE", "LS10 1QN", "B1 1BB"


def test_normalize_postcode_inserts_single_space():
    assert normalize_postcode("sw1a1aa") == "SW1A 1AA"
    assert normalize_postcode("  m1   1ae ") == "M1 1AE"
    assert normalize_postcode("abc") == "ABC"
    assert normalize_postcode(None) == ""


def test_extract_postcode_finds_first_match():
    assert extract_postcode("Deliver to unit 4, ls10 1qn please") == "LS10 1QN"
    assert extract_postcode("no postcode on this line") is None


def test_parse_stop_lines_reads_booking_time_and_reference():
    raw = "09:30 SW1A 1AA Ref 123\n\nnothing useful here\nM1 1AE\n"

    parsed = parse_stop_lines(raw)

    assert [entry.postcode for entry in parsed] == [A, B]
    assert parsed[0].booking_time == "09:30"
    assert parsed[0].reference == "Ref 123"
    assert parsed[1].booking_time is None
    assert parsed[1].reference is None
    assert parse_stops(raw) == [A, B]


def test_assign_stop_ids_keeps_ids_when_reordered():
    before = assign_stop_ids(f"{A}\n{B}\n{C}")
    ids = {stop.postcode: stop.id for stop in before}

    after = assign_stop_ids(f"{C}\n{A}\n{B}", before)

    assert [stop.postcode for stop in after] == [C, A, B]
    assert [stop.index for stop in after] == [0, 1, 2]
    assert all(stop.id == ids[stop.postcode] for stop in after)


def test_assign_stop_ids_insert_and_remove():
    before = assign_stop_ids(f"{A}\n{B}\n{C}")
    ids = {stop.postcode: stop.id for stop in before}

    inserted = assign_stop_ids(f"{A}\n{D}\n{B}\n{C}", before)
    assert inserted[0].id == ids[A]
    assert inserted[2].id == ids[B]
    assert inserted[3].id == ids[C]
    assert inserted[1].id not in ids.values()

    removed = assign_stop_ids(f"{A}\n{C}", before)
    assert [stop.id for stop in removed] == [ids[A], ids[C]]


def test_assign_stop_ids_distinguishes_repeated_postcodes():
    stops = assign_stop_ids(f"{A}\n{A}")

    assert len({stop.id for stop in stops}) == 2
    assert [stop.label for stop in stops] == ["Stop 1", "Stop 2"]


def test_rebase_progress_drops_removed_stops():
    before = assign_stop_ids(f"{A}\n{B}\n{C}")
    a, b, c = (stop.id for stop in before)
    progress = ProgressState(completed=frozenset({a, b}), on_site=c, on_site_since_ms=1.0)
    meta = {a: CompletedMeta(arrived_iso="t1"), b: CompletedMeta(arrived_iso="t2")}

    after = assign_stop_ids(f"{A}\n{D}", before)
    rebased, kept = rebase_progress(progress, meta, after)

    assert rebased.completed == frozenset({a})
    assert rebased.on_site is None
    assert rebased.on_site_since_ms is None
    assert set(kept) == {a}
