"""Outcome of a single vehicleLocations polling cycle."""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict

from nextbus_collector.models.locations import EPOCH, VehicleLocationsReport

XML_CONTENT_TYPES = ("text/xml", "application/xml")
HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


class FetchResult(BaseModel):
    """One polling cycle's request, response and parsed report.

    ``status_code`` is None when no response was received at all (transport
    failure); in that case ``error`` explains why and ``body`` is empty.
    """

    model_config = ConfigDict(frozen=True)

    agency: str
    url: str
    # Cursor used to compute the t query parameter, and the one before it.
    last_time: datetime = EPOCH
    last_last_time: datetime = EPOCH
    request_time: datetime
    response_time: datetime
    # Date header of the response; estimated_server_time when absent.
    server_time: datetime | None = None
    status_code: int | None = None
    reason: str = ""
    headers: tuple[tuple[str, str], ...] = ()
    content_type: str = ""
    body: bytes = b""
    report: VehicleLocationsReport | None = None
    error: str | None = None

    @property
    def is_transport_failure(self) -> bool:
        return self.status_code is None

    @property
    def estimated_server_time(self) -> datetime:
        """Midpoint of the request and response times."""
        return self.request_time + (self.response_time - self.request_time) / 2

    @property
    def server_time_offset(self) -> timedelta | None:
        """Difference between the server's clock and ours, if known."""
        if self.server_time is None:
            return None
        return self.server_time - self.estimated_server_time

    @property
    def archive_timestamp(self) -> datetime:
        # The server clock jumps around when it syncs (most days around 2am),
        # so archive names come from our own clock.
        if self.request_time < self.response_time:
            return self.estimated_server_time
        return self.request_time

    @property
    def body_is_xml(self) -> bool:
        return _body_matches(self, XML_CONTENT_TYPES, (b"<?xml", b"<body"))

    @property
    def body_is_html(self) -> bool:
        return _body_matches(self, HTML_CONTENT_TYPES, (b"<!doctype html", b"<html"))

    @property
    def vehicle_count(self) -> int:
        if self.report is None:
            return 0
        return len(self.report.vehicle_locations)


def _body_matches(
    result: FetchResult, content_types: tuple[str, ...], prefixes: tuple[bytes, ...]
) -> bool:
    if not result.body:
        return False
    content_type = result.content_type.split(";", 1)[0].strip().lower()
    if content_type:
        return content_type in content_types
    head = result.body[:64].lstrip().lower()
    return any(head.startswith(prefix) for prefix in prefixes)
