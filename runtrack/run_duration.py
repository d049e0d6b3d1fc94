"""Rough run duration estimates used to chain back-to-back runs on one vehicle.

These avoid routing calls entirely: every stop is assumed to cost a fixed
average drive plus the run's service time.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from runtrack.config import TrackingSettings
from runtrack.models import RunDefinition, parse_hhmm

AVG_DRIVE_PER_STOP_MINS = 20


def time_to_minutes(value: Optional[str], default: int = 8 * 60) -> int:
    parsed = parse_hhmm(value, f"{default // 60:02d}:{default % 60:02d}")
    return parsed.hour * 60 + parsed.minute


def minutes_to_time(minutes: int) -> str:
    return f"{(minutes // 60) % 24:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class FinishEstimate:
    finish_time: str
    finish_mins: int
    last_postcode: str


@dataclass(frozen=True)
class ChainedStart:
    start_time: str
    from_postcode: str


def estimate_finish_time(
    run: RunDefinition,
    settings: Optional[TrackingSettings] = None,
) -> FinishEstimate:
    cfg = settings or TrackingSettings()
    start = time_to_minutes(run.start_time)
    stop_count = len(run.stops)
    if not stop_count:
        return FinishEstimate(minutes_to_time(start), start, run.from_postcode)

    total_drive = stop_count * AVG_DRIVE_PER_STOP_MINS
    total_service = stop_count * run.service_mins
    break_mins = 0
    if run.include_breaks and total_drive > cfg.max_drive_before_break_mins:
        break_mins = (total_drive // cfg.max_drive_before_break_mins) * cfg.break_mins
    return_leg = AVG_DRIVE_PER_STOP_MINS if run.return_to_base else 0

    finish = start + total_drive + total_service + break_mins + return_leg
    last_postcode = run.from_postcode if run.return_to_base else run.stops[-1].postcode
    return FinishEstimate(minutes_to_time(finish), finish, last_postcode or run.from_postcode)


def compute_chained_starts(
    runs: Sequence[RunDefinition],
    settings: Optional[TrackingSettings] = None,
) -> Dict[str, ChainedStart]:
    """Effective start for each run of an ordered same-vehicle, same-day group.

    A later run starts at its configured time or when the previous run is
    estimated to finish, whichever is later, from where the previous run ends.
    """

    chained: Dict[str, ChainedStart] = {}
    previous: Optional[RunDefinition] = None
    for run in runs:
        if previous is None:
            chained[run.id] = ChainedStart(run.start_time, run.from_postcode)
        else:
            estimate = estimate_finish_time(previous, settings)
            effective = max(time_to_minutes(run.start_time), estimate.finish_mins)
            chained[run.id] = ChainedStart(minutes_to_time(effective), estimate.last_postcode)
        previous = run
    return chained


def group_by_vehicle_day(
    runs: Iterable[RunDefinition],
) -> Dict[Tuple[str, str], List[RunDefinition]]:
    groups: Dict[Tuple[str, str], List[RunDefinition]] = {}
    for run in runs:
        if not run.vehicle:
            continue
        groups.setdefault((run.vehicle.upper(), run.date.isoformat()), []).append(run)
    for group in groups.values():
        group.sort(key=lambda item: (time_to_minutes(item.start_time), item.id))
    return groups


__all__ = [
    "AVG_DRIVE_PER_STOP_MINS",
    "ChainedStart",
    "FinishEstimate",
    "compute_chained_starts",
    "estimate_finish_time",
    "group_by_vehicle_day",
    "minutes_to_time",
    "time_to_minutes",
]
