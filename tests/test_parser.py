"""Tests for the vehicleLocations XML parser."""

import pytest

from nextbus_collector.models.locations import from_unix_millis
from nextbus_collector.services.fetching.parser import (
    VehicleLocationsParseError,
    parse_vehicle_locations,
)

from .fixtures.nextbus_fixture import LAST_TIME_MS, build_vehicle_locations_xml


class TestParseVehicleLocations:
    """Unit tests for parse_vehicle_locations."""

    def test_parses_last_time_and_vehicles(self) -> None:
        report = parse_vehicle_locations(build_vehicle_locations_xml())

        assert report.last_time == from_unix_millis(LAST_TIME_MS)
        assert report.error_message == ""
        assert [loc.vehicle_id for loc in report.vehicle_locations] == ["0123", "0456"]

        first = report.vehicle_locations[0]
        assert first.route_tag == "1"
        assert first.dir_tag == "1_1_var0"
        assert first.heading == 135
        assert first.lat == pytest.approx(42.3309)
        assert first.lon == pytest.approx(-71.0826)

    def test_times_derived_from_seconds_since_report(self) -> None:
        report = parse_vehicle_locations(build_vehicle_locations_xml())
        by_id = {loc.vehicle_id: loc for loc in report.vehicle_locations}

        # Youngest report (4s) lands on lastTime; the 34s one 30s earlier.
        assert by_id["0456"].unix_millis == LAST_TIME_MS
        assert by_id["0123"].unix_millis == LAST_TIME_MS - 30_000

    def test_missing_last_time(self) -> None:
        report = parse_vehicle_locations(build_vehicle_locations_xml(last_time_ms=None))
        assert report.last_time is None

    def test_zero_last_time_treated_as_absent(self) -> None:
        report = parse_vehicle_locations(build_vehicle_locations_xml(last_time_ms=0))
        assert report.last_time is None

    def test_server_error_element(self) -> None:
        body = build_vehicle_locations_xml(
            vehicles=[], error="Agency server cannot update", should_retry=True
        )
        report = parse_vehicle_locations(body)

        assert report.error_message == "Agency server cannot update"
        assert report.should_retry is True
        assert report.vehicle_locations == ()

    def test_skips_vehicle_with_bad_position(self) -> None:
        vehicles = [
            {"id": "1", "lat": "abc", "lon": "-71.0", "secsSinceReport": "5"},
            {"id": "2", "lat": "95.0", "lon": "-71.0", "secsSinceReport": "5"},
            {"id": "3", "lat": "42.0", "lon": "-71.0", "secsSinceReport": "5"},
        ]
        report = parse_vehicle_locations(build_vehicle_locations_xml(vehicles=vehicles))

        assert [loc.vehicle_id for loc in report.vehicle_locations] == ["3"]

    def test_bad_heading_defaults(self) -> None:
        vehicles = [
            {"id": "7", "lat": "42.0", "lon": "-71.0", "secsSinceReport": "1", "heading": "x"},
            {"id": "8", "lat": "42.0", "lon": "-71.0", "secsSinceReport": "1"},
        ]
        report = parse_vehicle_locations(build_vehicle_locations_xml(vehicles=vehicles))

        assert [loc.heading for loc in report.vehicle_locations] == [-1, -1]
        assert report.vehicle_locations[0].route_tag == ""

    def test_malformed_xml_raises(self) -> None:
        with pytest.raises(VehicleLocationsParseError, match="Malformed"):
            parse_vehicle_locations(b"<body><vehicle id='1'")

    def test_wrong_root_raises(self) -> None:
        with pytest.raises(VehicleLocationsParseError, match="root element"):
            parse_vehicle_locations(b"<html><body/></html>")
