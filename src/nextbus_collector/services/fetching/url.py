"""Query cursor (t parameter) and URL construction for vehicleLocations."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from nextbus_collector.logging import get_logger
from nextbus_collector.models.locations import to_unix_millis

logger = get_logger(__name__)

# NextBus returns at most this much history for a non-zero t; t=0 returns up
# to 15 minutes.
MAX_LOOKBACK = timedelta(minutes=5)


def compute_t(
    last_time: datetime,
    extra_seconds: int,
    now: datetime | None = None,
) -> int:
    """Compute the t query parameter (epoch millis) from the cursor.

    ``now`` is our clock, not the server's, so the age of ``last_time`` is only
    an estimate.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    t = to_unix_millis(last_time)
    if t < 0:
        logger.warning("Cursor is before the unix epoch", last_time=last_time.isoformat(), t=t)
        return 0
    if t == 0:
        return 0

    if extra_seconds == 0:
        # Not doing overlapping fetches.
        if now - last_time > MAX_LOOKBACK:
            logger.debug("Cursor is stale, requesting t=0", last_time=last_time.isoformat())
            return 0
        return t

    t2 = last_time - timedelta(seconds=extra_seconds)
    if now - t2 > MAX_LOOKBACK:
        # Don't suddenly get old reports for vehicles already flushed from
        # the aggregator.
        t2 = now - MAX_LOOKBACK
        logger.debug(
            "Cursor minus overlap is too old, clamped",
            last_time=last_time.isoformat(),
            adjusted=t2.isoformat(),
        )
    return to_unix_millis(t2)


def build_url(base_url: str, agency: str, t: int) -> str:
    query = urlencode({"command": "vehicleLocations", "a": agency, "t": t})
    return f"{base_url}?{query}"


def url_and_t(
    base_url: str,
    agency: str,
    last_time: datetime,
    extra_seconds: int,
    now: datetime | None = None,
) -> tuple[str, int]:
    t = compute_t(last_time, extra_seconds, now=now)
    return build_url(base_url, agency, t), t
