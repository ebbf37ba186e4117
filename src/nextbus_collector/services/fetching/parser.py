"""vehicleLocations XML parser.

A typical body::

    <body copyright="All data copyright MBTA 2013.">
      <vehicle id="0123" routeTag="1" dirTag="1_1_var0" lat="42.33" lon="-71.08"
               secsSinceReport="34" predictable="true" heading="135"/>
      <lastTime time="1386115204367"/>
    </body>

``lastTime`` is when the most recent report was received by the server, and
each vehicle carries its age in seconds at the time the body was generated.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from lxml import etree

from nextbus_collector.logging import get_logger
from nextbus_collector.models.locations import (
    VehicleLocation,
    VehicleLocationsReport,
    from_unix_millis,
)

if TYPE_CHECKING:
    from datetime import datetime

logger = get_logger(__name__)

_XML_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_comments=True)


class VehicleLocationsParseError(Exception):
    """Raised when a body is not a parseable vehicleLocations document."""


def parse_vehicle_locations(body: bytes) -> VehicleLocationsReport:
    """Parse a vehicleLocations response body.

    Raises:
        VehicleLocationsParseError: If the body is not well-formed XML or the
            root element is not ``<body>``.
    """
    try:
        root = etree.fromstring(body, parser=_XML_PARSER)
    except etree.XMLSyntaxError as exc:
        msg = f"Malformed vehicleLocations XML: {exc}"
        raise VehicleLocationsParseError(msg) from exc
    if root is None or root.tag != "body":
        tag = None if root is None else root.tag
        msg = f"Unexpected root element: {tag!r}"
        raise VehicleLocationsParseError(msg)

    error_message = ""
    should_retry = False
    error_elem = root.find("Error")
    if error_elem is not None:
        error_message = (error_elem.text or "").strip()
        should_retry = error_elem.get("shouldRetry", "").strip().lower() == "true"

    last_time_ms = 0
    last_time: datetime | None = None
    last_time_elem = root.find("lastTime")
    if last_time_elem is not None:
        last_time_ms = _parse_int(last_time_elem.get("time"), default=0)
        if last_time_ms > 0:
            last_time = from_unix_millis(last_time_ms)
        else:
            logger.warning("Invalid lastTime in response", raw=last_time_elem.get("time"))
            last_time_ms = 0

    vehicle_elems = root.findall("vehicle")
    locations: list[VehicleLocation] = []
    if vehicle_elems:
        ages = [_parse_int(elem.get("secsSinceReport"), default=0) for elem in vehicle_elems]
        # lastTime plus the youngest age approximates when the body was
        # generated; each report's time is then that minus its own age.
        report_time_ms = last_time_ms + min(ages) * 1000
        for elem, age in zip(vehicle_elems, ages):
            location = _convert_vehicle(elem, report_time_ms - age * 1000)
            if location is not None:
                locations.append(location)

    return VehicleLocationsReport(
        last_time=last_time,
        error_message=error_message,
        should_retry=should_retry,
        vehicle_locations=tuple(locations),
    )


def _convert_vehicle(elem: etree._Element, time_ms: int) -> VehicleLocation | None:
    vehicle_id = elem.get("id", "")
    try:
        lat = float(elem.get("lat", ""))
        lon = float(elem.get("lon", ""))
    except ValueError:
        logger.warning("Skipping vehicle with unparseable position", vehicle_id=vehicle_id)
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        logger.warning(
            "Skipping vehicle with out of range position",
            vehicle_id=vehicle_id,
            lat=lat,
            lon=lon,
        )
        return None
    if not vehicle_id:
        logger.warning("Skipping vehicle without id", lat=lat, lon=lon)
        return None

    # Occasionally negative; not worth dropping the report over.
    heading = _parse_int(elem.get("heading"), default=-1)

    return VehicleLocation(
        vehicle_id=vehicle_id,
        route_tag=elem.get("routeTag", ""),
        dir_tag=elem.get("dirTag", ""),
        heading=heading,
        lat=lat,
        lon=lon,
        time=from_unix_millis(time_ms),
    )


def _parse_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default
