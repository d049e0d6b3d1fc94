"""Recoverable error types raised by the external lookup adapters."""
from __future__ import annotations


class TransientLookupError(Exception):
    """An external lookup failed; the caller should retry on the next tick."""


class TelemetryError(TransientLookupError):
    pass


class GeocodeError(TransientLookupError, ValueError):
    pass


class DirectionsError(TransientLookupError):
    pass


__all__ = [
    "DirectionsError",
    "GeocodeError",
    "TelemetryError",
    "TransientLookupError",
]
