"""UK postcode normalisation and stop-list parsing with stable stop ids."""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, replace
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Sequence, Tuple

from runtrack.models import CompletedMeta, ProgressState, Stop

POSTCODE_RE = re.compile(r"\b([A-Z]{1,2}\d{1,2}[A-Z]?)\s*(\d[A-Z]{2})\b")
BOOKING_TIME_RE = re.compile(r"\b([01]\d|2[0-3]):([0-5]\d)\b")


def _collapse_whitespace(value: str) -> str:
    return " ".join(value.strip().split())


def normalize_postcode(value: Optional[str]) -> str:
    """Return *value* upper-cased with a single space before the inward code."""

    text = (value or "").strip().upper()
    compact = re.sub(r"\s+", "", text)
    if len(compact) >= 5:
        return f"{compact[:-3]} {compact[-3:]}".strip()
    return text


def extract_postcode(line: str) -> Optional[str]:
    match = POSTCODE_RE.search(line.upper())
    if not match:
        return None
    return normalize_postcode(f"{match.group(1)} {match.group(2)}")


@dataclass(frozen=True)
class ParsedLine:
    postcode: str
    booking_time: Optional[str] = None
    reference: Optional[str] = None


def _parse_line(line: str) -> Optional[ParsedLine]:
    upper = line.upper()
    match = POSTCODE_RE.search(upper)
    if not match:
        return None
    postcode = normalize_postcode(f"{match.group(1)} {match.group(2)}")

    remainder = line[: match.start()] + " " + line[match.end():]
    booking_time: Optional[str] = None
    time_match = BOOKING_TIME_RE.search(remainder)
    if time_match:
        booking_time = f"{time_match.group(1)}:{time_match.group(2)}"
        remainder = remainder[: time_match.start()] + " " + remainder[time_match.end():]

    reference = _collapse_whitespace(remainder).strip(" ,;-|") or None
    return ParsedLine(postcode=postcode, booking_time=booking_time, reference=reference)


def parse_stop_lines(raw_text: Optional[str]) -> List[ParsedLine]:
    """Parse one stop per non-blank line that contains a postcode."""

    parsed: List[ParsedLine] = []
    for line in (raw_text or "").splitlines():
        if not line.strip():
            continue
        entry = _parse_line(line)
        if entry is not None:
            parsed.append(entry)
    return parsed


def parse_stops(raw_text: Optional[str]) -> List[str]:
    """Return the ordered, normalised postcodes found in *raw_text*."""

    return [entry.postcode for entry in parse_stop_lines(raw_text)]


def _new_stop_id() -> str:
    return uuid.uuid4().hex


def assign_stop_ids(
    raw_text: Optional[str],
    previous_stops: Sequence[Stop] = (),
) -> List[Stop]:
    """Parse *raw_text* into stops, reusing ids from *previous_stops*.

    Postcode sequences are aligned with :class:`difflib.SequenceMatcher` so
    that reordering, inserting or removing lines keeps the ids of every stop
    that survived the edit. Only genuinely new lines receive a fresh id.
    """

    parsed = parse_stop_lines(raw_text)
    old_codes = [stop.postcode for stop in previous_stops]
    new_codes = [entry.postcode for entry in parsed]

    reused: Dict[int, str] = {}
    matcher = SequenceMatcher(a=old_codes, b=new_codes, autojunk=False)
    for block in matcher.get_matching_blocks():
        for offset in range(block.size):
            reused[block.b + offset] = previous_stops[block.a + offset].id

    # Moved lines fall outside the aligned blocks; pair them up by postcode.
    claimed = set(reused.values())
    leftovers: Dict[str, List[str]] = {}
    for stop in previous_stops:
        if stop.id not in claimed:
            leftovers.setdefault(stop.postcode, []).append(stop.id)

    stops: List[Stop] = []
    for index, entry in enumerate(parsed):
        stop_id = reused.get(index)
        if stop_id is None:
            pool = leftovers.get(entry.postcode)
            stop_id = pool.pop(0) if pool else _new_stop_id()
        stops.append(
            Stop(
                id=stop_id,
                index=index,
                postcode=entry.postcode,
                booking_time=entry.booking_time,
                reference=entry.reference,
            )
        )
    return stops


def rebase_progress(
    progress: ProgressState,
    meta: Dict[str, CompletedMeta],
    stops: Sequence[Stop],
) -> Tuple[ProgressState, Dict[str, CompletedMeta]]:
    """Drop progress and meta for stops that an edit removed from the run."""

    live_ids = {stop.id for stop in stops}
    completed = frozenset(stop_id for stop_id in progress.completed if stop_id in live_ids)
    if progress.on_site is not None and progress.on_site not in live_ids:
        progress = progress.clear_dwell()
    rebased = replace(progress, completed=completed)
    kept_meta = {stop_id: entry for stop_id, entry in meta.items() if stop_id in completed}
    return rebased, kept_meta


__all__ = [
    "ParsedLine",
    "POSTCODE_RE",
    "assign_stop_ids",
    "extract_postcode",
    "normalize_postcode",
    "parse_stop_lines",
    "parse_stops",
    "rebase_progress",
]
