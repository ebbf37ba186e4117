"""Typed records flowing through the collection pipeline."""

from nextbus_collector.models.locations import (
    CSV_FIELD_NAMES,
    EPOCH,
    VehicleLocation,
    VehicleLocationsReport,
    from_unix_millis,
    to_unix_millis,
)
from nextbus_collector.models.responses import FetchResult

__all__ = [
    "CSV_FIELD_NAMES",
    "EPOCH",
    "FetchResult",
    "VehicleLocation",
    "VehicleLocationsReport",
    "from_unix_millis",
    "to_unix_millis",
]
