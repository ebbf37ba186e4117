"""Vehicle location records parsed from vehicleLocations responses."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, ConfigDict, Field

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MILLISECOND = timedelta(milliseconds=1)

CSV_FIELD_NAMES = (
    "unix_ms",
    "vehicle id",
    "route tag",
    "direction tag",
    "heading",
    "latitude",
    "longitude",
)


def to_unix_millis(value: datetime) -> int:
    """Milliseconds since the epoch, truncated, without float arithmetic."""
    return (value - EPOCH) // _ONE_MILLISECOND


def from_unix_millis(millis: int) -> datetime:
    """Timezone-aware UTC datetime for epoch milliseconds."""
    return EPOCH + timedelta(milliseconds=millis)


class VehicleLocation(BaseModel):
    """One vehicle's reported position at a moment in time."""

    model_config = ConfigDict(frozen=True)

    vehicle_id: str
    route_tag: str = ""
    dir_tag: str = ""
    heading: int = -1
    lat: float
    lon: float
    time: datetime

    @property
    def unix_millis(self) -> int:
        return to_unix_millis(self.time)

    def is_same_report_except_time(self, other: VehicleLocation) -> bool:
        return (
            self.vehicle_id == other.vehicle_id
            and self.route_tag == other.route_tag
            and self.dir_tag == other.dir_tag
            and self.heading == other.heading
            and self.lat == other.lat
            and self.lon == other.lon
        )

    def with_time(self, time: datetime) -> VehicleLocation:
        """Copy of this record with a different timestamp."""
        return self.model_copy(update={"time": time})

    def to_csv_fields(self) -> list[str]:
        #   unix_ms, vehicle id, route tag, direction tag, heading, latitude, longitude
        return [
            str(self.unix_millis),
            self.vehicle_id,
            self.route_tag,
            self.dir_tag,
            str(self.heading),
            repr(self.lat),
            repr(self.lon),
        ]


def sort_key_time_and_id(location: VehicleLocation) -> tuple[int, str]:
    return location.unix_millis, location.vehicle_id


class VehicleLocationsReport(BaseModel):
    """Parsed body of a vehicleLocations response."""

    model_config = ConfigDict(frozen=True)

    # Server cursor for the next request; None when absent from the body.
    last_time: datetime | None = None
    error_message: str = ""
    should_retry: bool = False
    vehicle_locations: tuple[VehicleLocation, ...] = Field(default_factory=tuple)
