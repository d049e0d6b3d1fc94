"""Tracking settings: environment defaults overlaid with stored parameters."""
from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass, fields, replace
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from runtrack.db import bootstrap_parameters, get_parameter

logger = logging.getLogger(__name__)

ENV_PREFIX = "RUNTRACK_"


@dataclass(frozen=True)
class TrackingSettings:
    # Completion / proximity rules
    completion_radius_m: float = 800.0
    min_standstill_mins: float = 3.0

    # HGV driving rules
    hgv_time_multiplier: float = 1.15
    max_speed_kph: float = 88.5  # 55 mph
    max_drive_before_break_mins: int = 270  # 4h30
    break_mins: int = 45

    # Working day window
    cutoff_time: str = "17:00"
    reopen_time: str = "08:00"

    default_service_mins: int = 25
    default_start_time: str = "08:00"

    # Loop timing
    live_poll_seconds: float = 30.0
    sweep_interval_seconds: float = 120.0
    save_debounce_seconds: float = 2.0
    sweep_budget_seconds: float = 50.0

    timezone: str = "Europe/London"

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            logger.warning("Unknown timezone %s; falling back to UTC", self.timezone)
            return ZoneInfo("UTC")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TrackingSettings":
        """Build settings from ``RUNTRACK_<FIELD>`` environment variables."""

        env = os.environ if environ is None else environ
        overrides = {}
        for item in fields(cls):
            raw = env.get(f"{ENV_PREFIX}{item.name.upper()}")
            if raw is None or not raw.strip():
                continue
            value = _coerce(item.name, raw.strip(), getattr(cls, item.name))
            if value is not None:
                overrides[item.name] = value
        return cls(**overrides)


def _coerce(name: str, raw: str, default: object) -> object:
    try:
        if isinstance(default, bool):
            return raw.lower() in {"1", "true", "yes", "on"}
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid value %r for setting %s", raw, name)
        return None
    return raw


PARAMETER_DEFAULTS: tuple[tuple[str, float, str], ...] = (
    ("completion_radius_m", 800.0, "Distance from a stop still counted as on site"),
    ("min_standstill_mins", 3.0, "Minutes inside the radius before a stop completes"),
    ("hgv_time_multiplier", 1.15, "Multiplier applied to car routing durations"),
    ("max_speed_kph", 88.5, "Average speed ceiling used to floor leg durations"),
    ("max_drive_before_break_mins", 270.0, "Continuous driving allowed before a break"),
    ("break_mins", 45.0, "Length of an inserted driving break"),
)

_TEXT_PARAMETERS = ("cutoff_time", "reopen_time", "timezone")


def bootstrap_settings(conn: sqlite3.Connection) -> int:
    added = bootstrap_parameters(conn, PARAMETER_DEFAULTS)
    if added:
        logger.info("Seeded %d default parameter(s)", added)
    return added


def load_settings(
    conn: sqlite3.Connection,
    base: Optional[TrackingSettings] = None,
) -> TrackingSettings:
    """Overlay tunables stored in ``global_parameters`` onto *base*."""

    settings = base or TrackingSettings.from_env()
    overrides = {}
    for item in fields(TrackingSettings):
        value = get_parameter(conn, item.name)
        if value is None or value == "":
            continue
        wants_text = item.name in _TEXT_PARAMETERS
        if wants_text != isinstance(value, str):
            logger.warning("Ignoring stored parameter %s with value %r", item.name, value)
            continue
        if wants_text:
            overrides[item.name] = value
            continue
        current = getattr(settings, item.name)
        overrides[item.name] = int(value) if isinstance(current, int) else float(value)
    return replace(settings, **overrides) if overrides else settings


__all__ = [
    "PARAMETER_DEFAULTS",
    "TrackingSettings",
    "bootstrap_settings",
    "load_settings",
]
