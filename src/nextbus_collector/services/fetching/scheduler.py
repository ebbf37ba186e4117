"""Periodic vehicleLocations fetcher with recovery backoff."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING

from nextbus_collector.logging import get_logger
from nextbus_collector.models.locations import EPOCH
from nextbus_collector.services.pipeline.stage import Stage

if TYPE_CHECKING:
    from nextbus_collector.models.responses import FetchResult
    from nextbus_collector.services.fetching.fetcher import VehicleLocationsFetcher

logger = get_logger(__name__)

INITIAL_RETRY_DELAY_SEC = 1.0


class RetrySchedule:
    """Delay before the next attempt while recovering from bad cycles.

    Starts at one second after the first bad cycle, doubles with each
    consecutive bad cycle, and never exceeds the nominal interval.
    """

    def __init__(self, interval_sec: float) -> None:
        self.interval_sec = interval_sec
        self.delay_sec = 0.0

    @property
    def recovering(self) -> bool:
        return self.delay_sec > 0

    def record_failure(self) -> float:
        if self.recovering:
            self.delay_sec = min(self.delay_sec * 2, self.interval_sec)
        else:
            self.delay_sec = min(INITIAL_RETRY_DELAY_SEC, self.interval_sec)
        return self.delay_sec

    def record_success(self) -> None:
        self.delay_sec = 0.0


def classify_result(result: FetchResult, last_time: datetime) -> tuple[bool, datetime]:
    """Decide whether a cycle was bad, and the cursor to use next.

    Returns:
        Tuple of (retry_needed, new_last_time).
    """
    if result.is_transport_failure:
        logger.error(
            "Complete failure fetching vehicle locations",
            agency=result.agency,
            url=result.url,
            error=result.error,
        )
        return True, last_time

    report = result.report
    if report is None:
        logger.error(
            "Failed to fetch vehicle locations",
            url=result.url,
            status_code=result.status_code,
            error=result.error,
        )
        return True, last_time

    if result.error is not None:
        logger.error("Partial failure fetching vehicle locations", url=result.url, error=result.error)

    server_last_time = report.last_time
    if server_last_time is None or server_last_time <= EPOCH:
        logger.debug("No lastTime in response", url=result.url)
        return True, last_time
    if server_last_time > last_time:
        logger.debug("Updated lastTime", last_time=server_last_time.isoformat())
        return False, server_last_time
    if server_last_time < last_time:
        # Happens when the server adjusts its clock. Tolerated rather than
        # treated as a failure; worth an operator's look if it recurs.
        logger.warning(
            "lastTime going backwards",
            behind_sec=(last_time - server_last_time).total_seconds(),
            last_time=last_time.isoformat(),
            server_last_time=server_last_time.isoformat(),
        )
    return False, last_time


class FetchScheduler(Stage):
    """Fetches on a steady interval, switching to a short backoff timer after
    a bad cycle until a fetch succeeds again.

    Every result, good or bad, is put on the output queue. Stop is only
    noticed while waiting for a timer; the in-flight fetch (if any) completes
    and its result is emitted before the output is closed.
    """

    name = "Periodic Fetcher"

    def __init__(
        self,
        agency: str,
        interval_sec: float,
        extra_seconds: int,
        fetcher: VehicleLocationsFetcher,
        output: asyncio.Queue[FetchResult | None],
    ) -> None:
        super().__init__()
        self.agency = agency
        self.interval_sec = interval_sec
        self.extra_seconds = extra_seconds
        self._fetcher = fetcher
        self._output = output
        self._retry = RetrySchedule(interval_sec)
        self._last_time = EPOCH
        self._next_tick: float | None = None
        self._retry_at: float | None = None
        self._fetch_count = 0
        self._failure_count = 0

    @property
    def last_time(self) -> datetime:
        return self._last_time

    @property
    def recovering(self) -> bool:
        return self._retry.recovering

    @property
    def retry_delay_sec(self) -> float:
        return self._retry.delay_sec

    @property
    def fetch_count(self) -> int:
        return self._fetch_count

    @property
    def failure_count(self) -> int:
        return self._failure_count

    async def run(self) -> None:
        logger.info(
            "Periodic fetcher running",
            agency=self.agency,
            interval_sec=self.interval_sec,
            extra_seconds=self.extra_seconds,
        )
        loop = asyncio.get_running_loop()
        self._next_tick = loop.time() + self.interval_sec
        await self._do_tick()

        while True:
            wake_at = self._retry_at if self._retry.recovering else self._next_tick
            if wake_at is None:
                wake_at = loop.time() + self.interval_sec
            if await self.wait_for_stop(wake_at - loop.time()):
                break
            if self._retry.recovering:
                await self._do_retry()
            else:
                await self._do_tick()

        self._next_tick = None
        self._retry_at = None
        await self._output.put(None)
        logger.info("Periodic fetcher closed its output", fetch_count=self._fetch_count)

    async def fetch_once(self) -> bool:
        """Fetch, emit the result and update the cursor; True if bad."""
        self._fetch_count += 1
        result = await self._fetcher.fetch(self.agency, self._last_time, self.extra_seconds)
        retry, self._last_time = classify_result(result, self._last_time)
        offset = result.server_time_offset
        if offset is not None:
            logger.debug("Server time offset", offset_sec=offset.total_seconds())
        await self._output.put(result)
        if retry:
            self._failure_count += 1
        return retry

    async def _do_tick(self) -> None:
        loop = asyncio.get_running_loop()
        retry = await self.fetch_once()
        now = loop.time()
        if not retry:
            # Ticker semantics: ticks missed while fetching are dropped.
            if self._next_tick is None:
                self._next_tick = now
            while self._next_tick <= now:
                self._next_tick += self.interval_sec
            return
        self._next_tick = None
        delay = self._retry.record_failure()
        self._retry_at = now + delay
        logger.info("Fetch failed, recovering", retry_in_sec=delay)

    async def _do_retry(self) -> None:
        loop = asyncio.get_running_loop()
        logger.info("Recovery timer expired", delay_sec=self._retry.delay_sec)
        started = loop.time()
        retry = await self.fetch_once()
        if not retry:
            logger.info("Recovered from fetch errors, resuming normal ticking")
            self._retry.record_success()
            self._retry_at = None
            self._next_tick = started + self.interval_sec
            return
        delay = self._retry.record_failure()
        self._retry_at = loop.time() + delay
        logger.info("Still recovering from fetch errors", retry_in_sec=delay)
