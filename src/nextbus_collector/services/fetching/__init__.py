"""Fetching vehicleLocations from NextBus on a schedule."""

from nextbus_collector.services.fetching.fetcher import VehicleLocationsFetcher
from nextbus_collector.services.fetching.parser import (
    VehicleLocationsParseError,
    parse_vehicle_locations,
)
from nextbus_collector.services.fetching.scheduler import FetchScheduler, RetrySchedule

__all__ = [
    "FetchScheduler",
    "RetrySchedule",
    "VehicleLocationsFetcher",
    "VehicleLocationsParseError",
    "parse_vehicle_locations",
]
