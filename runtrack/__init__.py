"""Live run tracking: stop completion, progress reconciliation and ETA chains."""

# Re-export the database helpers and error types at the package level. The
# adapters pull in openrouteservice, httpx and pandas, so import those from
# their own modules.
from .db import (
    connection_scope,
    ensure_schema,
    get_connection,
    get_parameter,
    set_parameter,
)
from .errors import DirectionsError, GeocodeError, TelemetryError, TransientLookupError

__all__ = [
    "DirectionsError",
    "GeocodeError",
    "TelemetryError",
    "TransientLookupError",
    "connection_scope",
    "ensure_schema",
    "get_connection",
    "get_parameter",
    "set_parameter",
]
