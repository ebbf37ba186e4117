"""vehicleLocations fetcher: one HTTP exchange, timed and parsed."""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any

import httpx

from nextbus_collector.logging import get_logger
from nextbus_collector.models.locations import from_unix_millis
from nextbus_collector.models.responses import FetchResult
from nextbus_collector.services.fetching.parser import (
    VehicleLocationsParseError,
    parse_vehicle_locations,
)
from nextbus_collector.services.fetching.url import url_and_t

if TYPE_CHECKING:
    from nextbus_collector.models.locations import VehicleLocationsReport

logger = get_logger(__name__)

# Below the 10 second minimum polling interval so that a slow response never
# delays the next tick.
DEFAULT_TIMEOUT_SEC = 9.5


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_server_time(headers: httpx.Headers) -> datetime | None:
    """Parse the Date header, if present and valid."""
    raw = headers.get("date")
    if not raw:
        return None
    try:
        server_time = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        logger.warning("Unparseable Date header", date=raw)
        return None
    if server_time.tzinfo is None:
        server_time = server_time.replace(tzinfo=timezone.utc)
    return server_time


class VehicleLocationsFetcher:
    """Fetches and parses one vehicleLocations response per call.

    Never raises for transport, HTTP status or parse problems; those are
    reported in ``FetchResult.error`` so the scheduler can classify them.
    """

    def __init__(self, base_url: str, timeout_sec: float = DEFAULT_TIMEOUT_SEC) -> None:
        self.base_url = base_url
        self.timeout_sec = timeout_sec

    async def fetch(self, agency: str, last_time: datetime, extra_seconds: int) -> FetchResult:
        """Request vehicle locations newer than (roughly) ``last_time``.

        Args:
            agency: NextBus agency tag.
            last_time: Cursor from the previous successful fetch.
            extra_seconds: Overlap to subtract from the cursor.

        Returns:
            FetchResult describing the exchange.
        """
        url, t = url_and_t(self.base_url, agency, last_time, extra_seconds)
        common: dict[str, Any] = {
            "agency": agency,
            "url": url,
            "last_time": from_unix_millis(t),
            "last_last_time": last_time,
        }

        request_time = _now()
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_sec),
                follow_redirects=False,
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            response_time = _now()
            logger.error(
                "vehicleLocations request failed",
                url=url,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return FetchResult(
                **common,
                request_time=request_time,
                response_time=response_time,
                error=f"{type(exc).__name__}: {exc}",
            )
        response_time = _now()

        server_time = get_server_time(response.headers)
        if server_time is None:
            logger.warning("Server didn't return Date header", url=url)

        body = response.content
        report: VehicleLocationsReport | None = None
        error: str | None = None
        content_type = response.headers.get("content-type", "")

        result = FetchResult(
            **common,
            request_time=request_time,
            response_time=response_time,
            server_time=server_time,
            status_code=response.status_code,
            reason=response.reason_phrase,
            headers=tuple(sorted(response.headers.multi_items())),
            content_type=content_type,
            body=body,
        )

        if response.status_code != httpx.codes.OK:
            error = f"HTTP {response.status_code} {response.reason_phrase}".strip()
            logger.warning("Unexpected HTTP status", url=url, status_code=response.status_code)
        elif not result.body_is_xml:
            error = f"Unexpected content type: {content_type or 'unknown'}"
            logger.warning("Unexpected content type", url=url, content_type=content_type)
        else:
            try:
                report = parse_vehicle_locations(body)
            except VehicleLocationsParseError as exc:
                error = str(exc)
                logger.warning("Error parsing vehicleLocations", url=url, error=error)
            else:
                if report.error_message:
                    logger.warning(
                        "Server reported an error",
                        url=url,
                        message=report.error_message,
                        should_retry=report.should_retry,
                    )
                logger.debug(
                    "Found vehicle updates",
                    url=url,
                    count=len(report.vehicle_locations),
                    size_bytes=len(body),
                )

        if report is None and error is None:
            return result
        return result.model_copy(update={"report": report, "error": error})
