"""SQLite schema management and connection helpers."""
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Optional, Tuple, Union

DEFAULT_DB_PATH = os.environ.get("RUNTRACK_DB", os.environ.get("ROUTES_DB", "runtrack.db"))

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS runs (
  id TEXT PRIMARY KEY,
  job_number TEXT NOT NULL DEFAULT '',
  load_ref TEXT NOT NULL DEFAULT '',
  date TEXT NOT NULL,
  customer TEXT NOT NULL DEFAULT '',
  vehicle TEXT NOT NULL DEFAULT '',
  from_postcode TEXT NOT NULL DEFAULT '',
  to_postcode TEXT NOT NULL DEFAULT '',
  return_to_base INTEGER NOT NULL DEFAULT 1,
  start_time TEXT NOT NULL DEFAULT '08:00',
  service_mins INTEGER NOT NULL DEFAULT 25,
  include_breaks INTEGER NOT NULL DEFAULT 1,
  open_time TEXT,
  close_time TEXT,
  raw_text TEXT NOT NULL DEFAULT '',
  stops TEXT NOT NULL DEFAULT '[]',
  completed_stop_indexes TEXT NOT NULL DEFAULT '[]',
  completed_meta TEXT NOT NULL DEFAULT '{}',
  progress TEXT NOT NULL DEFAULT '{}',
  updated_at TEXT
);

CREATE INDEX IF NOT EXISTS runs_date_idx ON runs (date DESC);

CREATE TABLE IF NOT EXISTS postcode_coords (
  postcode TEXT PRIMARY KEY,
  lat REAL NOT NULL,
  lng REAL NOT NULL,
  cached_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vehicle_positions (
  vehicle TEXT PRIMARY KEY,
  lat REAL NOT NULL,
  lng REAL NOT NULL,
  speed_kph REAL,
  heading REAL,
  pos_time TEXT,
  collected_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vehicle_position_log (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  vehicle TEXT NOT NULL,
  lat REAL NOT NULL,
  lng REAL NOT NULL,
  speed_kph REAL,
  heading REAL,
  pos_time TEXT,
  collected_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS vehicle_position_log_vehicle_time_idx
  ON vehicle_position_log (vehicle, collected_at DESC);
"""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection(db_path: Optional[str] = None) -> sqlite3.Connection:
    """Return a SQLite connection using WAL mode for better concurrency."""
    path = db_path or DEFAULT_DB_PATH
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    return conn


@contextmanager
def connection_scope(db_path: Optional[str] = None):
    """Context manager that yields a SQLite connection and closes it afterwards."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    try:
        rows = conn.execute(f"PRAGMA table_info({table})")
    except sqlite3.OperationalError:
        return False
    return any(row[1] == column for row in rows)


def _ensure_column(
    conn: sqlite3.Connection,
    table: str,
    column: str,
    definition: str,
) -> None:
    if _column_exists(conn, table, column):
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Ensure the run tracking tables exist in *conn*."""

    conn.executescript(SCHEMA_SQL)
    # Older databases predate stable stop ids and customer working hours.
    _ensure_column(conn, "runs", "stops", "TEXT NOT NULL DEFAULT '[]'")
    _ensure_column(conn, "runs", "open_time", "TEXT")
    _ensure_column(conn, "runs", "close_time", "TEXT")
    _ensure_column(conn, "runs", "updated_at", "TEXT")
    ensure_global_parameters_table(conn)
    conn.commit()


def ensure_global_parameters_table(conn: sqlite3.Connection) -> None:
    """Ensure the global_parameters table exists."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS global_parameters (
            key TEXT PRIMARY KEY,
            value_numeric REAL,
            value_text TEXT,
            description TEXT,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.commit()


ParameterValue = Union[float, str]


def get_parameter(
    conn: sqlite3.Connection,
    key: str,
    default: Optional[ParameterValue] = None,
) -> Optional[ParameterValue]:
    """Return the stored value for *key*: numeric if set, else text, else *default*."""
    try:
        row = conn.execute(
            "SELECT value_numeric, value_text FROM global_parameters WHERE key = ?",
            (key,),
        ).fetchone()
    except sqlite3.OperationalError:
        return default
    if row is None:
        return default
    numeric, text = row[0], row[1]
    if numeric is not None:
        return numeric
    return text if text is not None else default


def set_parameter(
    conn: sqlite3.Connection,
    key: str,
    value: ParameterValue,
    description: Optional[str] = None,
) -> None:
    """Store *value* under *key*; strings go to value_text, numbers to value_numeric."""
    if isinstance(value, str):
        numeric, text = None, value
    else:
        numeric, text = float(value), None
    conn.execute(
        """
        INSERT INTO global_parameters (key, value_numeric, value_text, description, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
            value_numeric = excluded.value_numeric,
            value_text = excluded.value_text,
            description = COALESCE(excluded.description, global_parameters.description),
            updated_at = excluded.updated_at
        """,
        (key, numeric, text, description, utc_now_iso()),
    )
    conn.commit()


def bootstrap_parameters(
    conn: sqlite3.Connection,
    defaults: Iterable[Tuple[str, ParameterValue, str]],
) -> int:
    """Seed every default whose key is not stored yet; return how many were added."""
    ensure_global_parameters_table(conn)
    stored = {row[0] for row in conn.execute("SELECT key FROM global_parameters")}
    added = 0
    for key, value, description in defaults:
        if key in stored:
            continue
        set_parameter(conn, key, value, description)
        added += 1
    return added


__all__ = [
    "DEFAULT_DB_PATH",
    "ParameterValue",
    "SCHEMA_SQL",
    "bootstrap_parameters",
    "connection_scope",
    "ensure_global_parameters_table",
    "ensure_schema",
    "get_connection",
    "get_parameter",
    "set_parameter",
    "utc_now_iso",
]
