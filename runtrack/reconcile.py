"""Merge progress from concurrent writers and persist it with coalescing.

Completions only ever grow through :func:`merge`; dwell tracking is taken from
the local side because it reflects the freshest geofence evaluation. The only
operations allowed to shrink the completed set are :func:`undo` and
:func:`reset`, and they are applied as read-modify-write on the store rather
than through the merge path.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, replace
from typing import Callable, Dict, Mapping, Optional, Protocol

from runtrack.models import (
    COMPLETED_BY,
    CompletedMeta,
    ProgressState,
    RunProgress,
    ms_to_iso,
)

logger = logging.getLogger(__name__)

MANUAL_ACTIONS = ("complete", "undo", "reset")


def _consistent(entry: CompletedMeta) -> CompletedMeta:
    if entry.at_iso and not entry.arrived_iso:
        return replace(entry, arrived_iso=entry.at_iso)
    return entry


def merge(local: ProgressState, remote: ProgressState) -> ProgressState:
    """Union the completions; keep the local dwell state."""

    return ProgressState(
        completed=local.completed | remote.completed,
        on_site=local.on_site,
        on_site_since_ms=local.on_site_since_ms,
        last_inside=local.last_inside,
    )


def merge_meta(
    local: Mapping[str, CompletedMeta],
    remote: Mapping[str, CompletedMeta],
    completed: frozenset,
) -> Dict[str, CompletedMeta]:
    """Combine meta for *completed* ids; local fields win, gaps come from remote."""

    merged: Dict[str, CompletedMeta] = {}
    for stop_id in completed:
        mine = local.get(stop_id)
        theirs = remote.get(stop_id)
        if mine is None and theirs is None:
            continue
        if mine is None or theirs is None:
            merged[stop_id] = _consistent(mine or theirs)
            continue
        merged[stop_id] = _consistent(
            CompletedMeta(
                by=mine.by,
                arrived_iso=mine.arrived_iso or theirs.arrived_iso,
                at_iso=mine.at_iso or theirs.at_iso,
            )
        )
    return merged


def merge_run_progress(local: RunProgress, remote: RunProgress) -> RunProgress:
    progress = merge(local.progress, remote.progress)
    return RunProgress(
        progress=progress,
        meta=merge_meta(local.meta, remote.meta, progress.completed),
    )


def stamp_transition(
    previous: ProgressState,
    current: ProgressState,
    meta: Mapping[str, CompletedMeta],
    now_ms: float,
) -> Dict[str, CompletedMeta]:
    """Record arrival for new completions and departure when tracking ends.

    Arrival comes from the dwell start when the stop was the one being
    tracked, else *now_ms*. Departure is stamped once, when the tracked stop
    is already completed and the tracker moves off it.
    """

    stamped = dict(meta)
    for stop_id in current.completed - previous.completed:
        if stop_id in stamped:
            continue
        since: Optional[float] = None
        if current.on_site == stop_id:
            since = current.on_site_since_ms
        elif previous.on_site == stop_id:
            since = previous.on_site_since_ms
        stamped[stop_id] = CompletedMeta(
            by="auto",
            arrived_iso=ms_to_iso(since if since is not None else now_ms),
        )

    left = previous.on_site
    if left is not None and current.on_site != left and left in current.completed:
        entry = stamped.get(left)
        if entry is None:
            arrived_ms = previous.on_site_since_ms
            entry = CompletedMeta(
                by="auto",
                arrived_iso=ms_to_iso(arrived_ms if arrived_ms is not None else now_ms),
            )
        if not entry.at_iso:
            stamped[left] = _consistent(replace(entry, at_iso=ms_to_iso(now_ms)))
    return stamped


def mark_complete(
    record: RunProgress,
    stop_id: str,
    now_ms: float,
    by: str = "admin",
) -> RunProgress:
    """Force-complete *stop_id*; a manual completion implies departure now."""

    if by not in COMPLETED_BY:
        raise ValueError(f"Unknown completion source: {by}")
    progress = record.progress
    since: Optional[float] = None
    if progress.on_site == stop_id:
        since = progress.on_site_since_ms
        progress = progress.clear_dwell()
    progress = progress.with_completed(stop_id)

    meta = dict(record.meta)
    existing = meta.get(stop_id)
    now_iso = ms_to_iso(now_ms)
    meta[stop_id] = CompletedMeta(
        by=by,
        arrived_iso=(existing.arrived_iso if existing else None)
        or (ms_to_iso(since) if since is not None else now_iso),
        at_iso=(existing.at_iso if existing else None) or now_iso,
    )
    return RunProgress(progress=progress, meta=meta)


def undo(record: RunProgress, stop_id: str) -> RunProgress:
    progress = replace(record.progress, completed=record.progress.completed - {stop_id})
    meta = {key: value for key, value in record.meta.items() if key != stop_id}
    return RunProgress(progress=progress, meta=meta)


def reset() -> RunProgress:
    return RunProgress(progress=ProgressState.empty(), meta={})


def patch_missing_departures(record: RunProgress, now_ms: float) -> RunProgress:
    """Stamp departure for completed stops that nothing is tracking any more.

    A writer that clears the dwell without recording the departure leaves a
    completed stop with an arrival but no departure; this closes it out.
    """

    meta = dict(record.meta)
    now_iso = ms_to_iso(now_ms)
    for stop_id in record.progress.completed:
        if record.progress.on_site == stop_id:
            continue
        entry = meta.get(stop_id)
        if entry is None:
            meta[stop_id] = CompletedMeta(by="auto", arrived_iso=now_iso, at_iso=now_iso)
        elif not entry.at_iso:
            meta[stop_id] = _consistent(replace(entry, at_iso=now_iso))
    if meta == dict(record.meta):
        return record
    return RunProgress(progress=record.progress, meta=meta)


@dataclass(frozen=True)
class ManualAction:
    kind: str
    stop_id: Optional[str] = None
    by: str = "admin"

    def __post_init__(self) -> None:
        if self.kind not in MANUAL_ACTIONS:
            raise ValueError(f"Unknown manual action: {self.kind}")
        if self.kind in {"complete", "undo"} and not self.stop_id:
            raise ValueError(f"Manual action {self.kind} needs a stop id")


def apply_manual_action(record: RunProgress, action: ManualAction, now_ms: float) -> RunProgress:
    if action.kind == "complete":
        return mark_complete(record, action.stop_id, now_ms, by=action.by)
    if action.kind == "undo":
        return undo(record, action.stop_id)
    return reset()


class ProgressSink(Protocol):
    def merge_and_save(self, run_id: str, local: RunProgress) -> RunProgress:
        ...


class DebouncedProgressWriter:
    """Coalesce rapid progress changes into one merged write after a quiet period."""

    def __init__(
        self,
        store: ProgressSink,
        run_id: str,
        delay_seconds: float = 2.0,
        on_saved: Optional[Callable[[RunProgress], None]] = None,
    ) -> None:
        self.store = store
        self.run_id = run_id
        self.delay_seconds = delay_seconds
        self.on_saved = on_saved
        self._pending: Optional[RunProgress] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def dirty(self) -> bool:
        return self._pending is not None

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def submit(self, record: RunProgress) -> None:
        self._pending = record
        self._cancel()
        self._task = asyncio.get_running_loop().create_task(self._write_later())

    async def _write_later(self) -> None:
        await asyncio.sleep(self.delay_seconds)
        self._write()

    def _write(self) -> Optional[RunProgress]:
        record = self._pending
        if record is None:
            return None
        try:
            merged = self.store.merge_and_save(self.run_id, record)
        except sqlite3.Error as exc:
            logger.warning("Progress write failed for run %s: %s", self.run_id, exc)
            return None
        if self._pending is record:
            self._pending = None
        if self.on_saved is not None:
            self.on_saved(merged)
        return merged

    async def flush(self) -> Optional[RunProgress]:
        """Write any pending change now instead of waiting for the quiet period."""

        self._cancel()
        return self._write()

    def discard(self) -> None:
        self._cancel()
        self._pending = None


class ImmediateProgressWriter(DebouncedProgressWriter):
    """Merge and write on every submit; used by the batch sweep."""

    def __init__(
        self,
        store: ProgressSink,
        run_id: str,
        on_saved: Optional[Callable[[RunProgress], None]] = None,
    ) -> None:
        super().__init__(store, run_id, delay_seconds=0.0, on_saved=on_saved)

    async def submit(self, record: RunProgress) -> None:
        self._pending = record
        self._write()


__all__ = [
    "DebouncedProgressWriter",
    "ImmediateProgressWriter",
    "MANUAL_ACTIONS",
    "ManualAction",
    "apply_manual_action",
    "mark_complete",
    "merge",
    "merge_meta",
    "merge_run_progress",
    "patch_missing_departures",
    "reset",
    "stamp_transition",
    "undo",
]
