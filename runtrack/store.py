"""Run records in SQLite: typed decode and merge-then-write persistence."""
from __future__ import annotations

import json
import logging
import sqlite3
from datetime import date, timedelta
from typing import Any, List, Optional, Sequence

from runtrack.db import utc_now_iso
from runtrack.models import (
    ProgressState,
    RunDefinition,
    RunProgress,
    Stop,
    decode_meta,
    decode_stops,
    encode_meta,
)
from runtrack.postcodes import assign_stop_ids, normalize_postcode, rebase_progress
from runtrack.reconcile import ManualAction, apply_manual_action, merge_run_progress

logger = logging.getLogger(__name__)

RUN_COLUMNS = (
    "id",
    "job_number",
    "load_ref",
    "date",
    "customer",
    "vehicle",
    "from_postcode",
    "to_postcode",
    "return_to_base",
    "start_time",
    "service_mins",
    "include_breaks",
    "open_time",
    "close_time",
    "raw_text",
    "stops",
)


def _load_json(value: Any, fallback: Any) -> Any:
    if not value:
        return fallback
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return fallback


def _dump_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


class ProgressStore:
    """Read run definitions and persist progress through the merge rule."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        cursor = self.conn.cursor()
        cursor.row_factory = sqlite3.Row
        return cursor.execute(sql, params).fetchall()

    def _definition(self, row: sqlite3.Row) -> RunDefinition:
        stops = decode_stops(_load_json(row["stops"], []))
        if not stops and row["raw_text"]:
            # Runs imported before stop ids existed get them on first read.
            stops = self.save_stops(row["id"], row["raw_text"])
        return RunDefinition(
            id=row["id"],
            date=date.fromisoformat(row["date"]),
            vehicle=(row["vehicle"] or "").strip(),
            from_postcode=normalize_postcode(row["from_postcode"]),
            to_postcode=normalize_postcode(row["to_postcode"]),
            return_to_base=bool(row["return_to_base"]),
            start_time=row["start_time"] or "08:00",
            service_mins=int(row["service_mins"] if row["service_mins"] is not None else 25),
            include_breaks=bool(row["include_breaks"]),
            open_time=row["open_time"],
            close_time=row["close_time"],
            raw_text=row["raw_text"] or "",
            stops=tuple(stops),
            job_number=row["job_number"] or "",
            load_ref=row["load_ref"] or "",
            customer=row["customer"] or "",
        )

    def load_run(self, run_id: str) -> Optional[RunDefinition]:
        columns = ", ".join(RUN_COLUMNS)
        rows = self._query(f"SELECT {columns} FROM runs WHERE id = ?", (run_id,))
        if not rows:
            return None
        return self._definition(rows[0])

    def list_active_runs(self, today: date) -> List[RunDefinition]:
        """Today's runs plus yesterday's unfinished runs, vehicle assigned."""

        yesterday = today - timedelta(days=1)
        columns = ", ".join(RUN_COLUMNS)
        rows = self._query(
            f"""
            SELECT {columns}, progress FROM runs
            WHERE date IN (?, ?) AND TRIM(vehicle) <> ''
            ORDER BY date, start_time, id
            """,
            (today.isoformat(), yesterday.isoformat()),
        )
        runs: List[RunDefinition] = []
        for row in rows:
            run = self._definition(row)
            if run.date == yesterday:
                progress = ProgressState.from_payload(_load_json(row["progress"], {}), run.stops)
                if all(stop_id in progress.completed for stop_id in run.stop_ids):
                    continue
            runs.append(run)
        return runs

    def _progress_row(self, run_id: str) -> Optional[sqlite3.Row]:
        rows = self._query(
            "SELECT stops, progress, completed_meta FROM runs WHERE id = ?",
            (run_id,),
        )
        return rows[0] if rows else None

    def load_progress(self, run_id: str) -> RunProgress:
        row = self._progress_row(run_id)
        if row is None:
            return RunProgress()
        stops = decode_stops(_load_json(row["stops"], []))
        return RunProgress(
            progress=ProgressState.from_payload(_load_json(row["progress"], {}), stops),
            meta=decode_meta(_load_json(row["completed_meta"], {}), stops),
        )

    def _write(self, run_id: str, record: RunProgress) -> None:
        row = self._progress_row(run_id)
        if row is None:
            raise KeyError(f"Unknown run: {run_id}")
        stops = decode_stops(_load_json(row["stops"], []))
        self.conn.execute(
            """
            UPDATE runs SET
                progress = ?,
                completed_stop_indexes = ?,
                completed_meta = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                _dump_json(record.progress.to_payload()),
                _dump_json(record.progress.completed_indexes(stops)),
                _dump_json(encode_meta(record.meta)),
                utc_now_iso(),
                run_id,
            ),
        )
        self.conn.commit()

    def merge_and_save(self, run_id: str, local: RunProgress) -> RunProgress:
        """Merge *local* into the stored record, write it, return the merged state.

        The result only covers stops still in the stored list, so a write
        queued before a stop edit cannot bring a removed stop back.
        """

        row = self._progress_row(run_id)
        if row is None:
            raise KeyError(f"Unknown run: {run_id}")
        stops = decode_stops(_load_json(row["stops"], []))
        merged = merge_run_progress(local, self.load_progress(run_id))
        if stops:
            progress, meta = rebase_progress(merged.progress, dict(merged.meta), stops)
            merged = RunProgress(progress=progress, meta=meta)
        self._write(run_id, merged)
        return merged

    def apply_manual(self, run_id: str, action: ManualAction, now_ms: float) -> RunProgress:
        updated = apply_manual_action(self.load_progress(run_id), action, now_ms)
        self._write(run_id, updated)
        logger.info("Run %s: manual %s %s", run_id, action.kind, action.stop_id or "")
        return updated

    def save_stops(self, run_id: str, raw_text: str) -> List[Stop]:
        """Re-parse an edited stop list, keeping ids of the stops that survived."""

        row = self._progress_row(run_id)
        if row is None:
            raise KeyError(f"Unknown run: {run_id}")
        previous = decode_stops(_load_json(row["stops"], []))
        stops = assign_stop_ids(raw_text, previous)
        # Index-keyed legacy progress refers to the list being assigned ids.
        basis = previous or stops
        record = RunProgress(
            progress=ProgressState.from_payload(_load_json(row["progress"], {}), basis),
            meta=decode_meta(_load_json(row["completed_meta"], {}), basis),
        )
        progress, meta = rebase_progress(record.progress, dict(record.meta), stops)
        self.conn.execute(
            """
            UPDATE runs SET
                raw_text = ?,
                stops = ?,
                progress = ?,
                completed_stop_indexes = ?,
                completed_meta = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                raw_text,
                _dump_json([stop.to_payload() for stop in stops]),
                _dump_json(progress.to_payload()),
                _dump_json(progress.completed_indexes(stops)),
                _dump_json(encode_meta(meta)),
                utc_now_iso(),
                run_id,
            ),
        )
        self.conn.commit()
        return stops

    def upsert_run(self, run: RunDefinition) -> None:
        """Insert or update a run definition, leaving stored progress alone."""

        stops = list(run.stops) or assign_stop_ids(run.raw_text)
        self.conn.execute(
            """
            INSERT INTO runs (
                id, job_number, load_ref, date, customer, vehicle, from_postcode,
                to_postcode, return_to_base, start_time, service_mins, include_breaks,
                open_time, close_time, raw_text, stops, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                job_number = excluded.job_number,
                load_ref = excluded.load_ref,
                date = excluded.date,
                customer = excluded.customer,
                vehicle = excluded.vehicle,
                from_postcode = excluded.from_postcode,
                to_postcode = excluded.to_postcode,
                return_to_base = excluded.return_to_base,
                start_time = excluded.start_time,
                service_mins = excluded.service_mins,
                include_breaks = excluded.include_breaks,
                open_time = excluded.open_time,
                close_time = excluded.close_time,
                raw_text = excluded.raw_text,
                stops = excluded.stops,
                updated_at = excluded.updated_at
            """,
            (
                run.id,
                run.job_number,
                run.load_ref,
                run.date.isoformat(),
                run.customer,
                run.vehicle,
                run.from_postcode,
                run.to_postcode,
                int(run.return_to_base),
                run.start_time,
                run.service_mins,
                int(run.include_breaks),
                run.open_time,
                run.close_time,
                run.raw_text,
                _dump_json([stop.to_payload() for stop in stops]),
                utc_now_iso(),
            ),
        )
        self.conn.commit()


__all__ = ["ProgressStore", "RUN_COLUMNS"]
