"""Tests for the periodic vehicleLocations fetcher."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from nextbus_collector.models.locations import EPOCH, VehicleLocationsReport, from_unix_millis
from nextbus_collector.models.responses import FetchResult
from nextbus_collector.services.fetching.scheduler import (
    FetchScheduler,
    RetrySchedule,
    classify_result,
)

from .fixtures.nextbus_fixture import LAST_TIME_MS, FakeFetcher, make_fetch_result


def _good(last_time_ms: int) -> FetchResult:
    report = VehicleLocationsReport(last_time=from_unix_millis(last_time_ms))
    return make_fetch_result(report=report)


def _transport_failure() -> FetchResult:
    return make_fetch_result(status_code=None, error="ConnectError: refused")


async def _drain(queue: asyncio.Queue[FetchResult | None]) -> list[FetchResult | None]:
    items: list[FetchResult | None] = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class TestRetrySchedule:
    """Unit tests for RetrySchedule."""

    def test_doubles_up_to_interval(self) -> None:
        schedule = RetrySchedule(interval_sec=10.0)
        delays = [schedule.record_failure() for _ in range(6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
        assert schedule.recovering

    def test_success_resets(self) -> None:
        schedule = RetrySchedule(interval_sec=10.0)
        schedule.record_failure()
        schedule.record_failure()
        schedule.record_success()

        assert not schedule.recovering
        assert schedule.record_failure() == 1.0

    def test_initial_delay_capped_by_interval(self) -> None:
        schedule = RetrySchedule(interval_sec=0.5)
        assert schedule.record_failure() == 0.5


class TestClassifyResult:
    """Unit tests for classify_result."""

    def test_transport_failure_is_bad(self) -> None:
        cursor = from_unix_millis(LAST_TIME_MS)
        assert classify_result(_transport_failure(), cursor) == (True, cursor)

    def test_missing_report_is_bad(self) -> None:
        result = make_fetch_result(status_code=503, error="HTTP 503 Service Unavailable")
        assert classify_result(result, EPOCH) == (True, EPOCH)

    def test_missing_last_time_is_bad(self) -> None:
        result = make_fetch_result(report=VehicleLocationsReport(last_time=None))
        assert classify_result(result, EPOCH) == (True, EPOCH)

    def test_newer_server_time_advances(self) -> None:
        retry, cursor = classify_result(_good(LAST_TIME_MS), EPOCH)
        assert retry is False
        assert cursor == from_unix_millis(LAST_TIME_MS)

    def test_older_server_time_keeps_cursor(self) -> None:
        current = from_unix_millis(LAST_TIME_MS)
        retry, cursor = classify_result(_good(LAST_TIME_MS - 5000), current)
        assert retry is False
        assert cursor == current

    def test_partial_failure_still_good(self) -> None:
        report = VehicleLocationsReport(last_time=from_unix_millis(LAST_TIME_MS))
        result = make_fetch_result(report=report, error="Server reported an error")
        retry, cursor = classify_result(result, EPOCH)
        assert retry is False
        assert cursor == from_unix_millis(LAST_TIME_MS)


class TestFetchScheduler:
    """Tests for FetchScheduler timing and shutdown."""

    @pytest.mark.asyncio
    async def test_fetches_immediately_and_on_interval(self) -> None:
        fetcher = FakeFetcher([_good(LAST_TIME_MS), _good(LAST_TIME_MS + 10_000)])
        output: asyncio.Queue[FetchResult | None] = asyncio.Queue()
        scheduler = FetchScheduler("mbta", 0.05, 60, fetcher, output)  # type: ignore[arg-type]

        scheduler.start()
        await asyncio.sleep(0.13)
        assert await scheduler.stop(timeout=1.0)

        items = await _drain(output)
        assert items[-1] is None
        assert len(items) - 1 == scheduler.fetch_count
        assert scheduler.fetch_count >= 2
        assert fetcher.calls[0] == EPOCH
        assert fetcher.calls[1] == from_unix_millis(LAST_TIME_MS)
        assert scheduler.last_time == from_unix_millis(LAST_TIME_MS + 10_000)

    @pytest.mark.asyncio
    async def test_recovers_after_failure(self) -> None:
        fetcher = FakeFetcher([_transport_failure(), _good(LAST_TIME_MS)])
        output: asyncio.Queue[FetchResult | None] = asyncio.Queue()
        scheduler = FetchScheduler("mbta", 60.0, 60, fetcher, output)  # type: ignore[arg-type]

        with patch("nextbus_collector.services.fetching.scheduler.INITIAL_RETRY_DELAY_SEC", 0.01):
            scheduler.start()
            await asyncio.sleep(0.1)

        assert scheduler.fetch_count == 2
        assert scheduler.failure_count == 1
        assert not scheduler.recovering
        assert scheduler.last_time == from_unix_millis(LAST_TIME_MS)

        assert await scheduler.stop(timeout=1.0)
        items = await _drain(output)
        assert len(items) == 3
        assert items[0] is not None and items[0].is_transport_failure
        assert items[-1] is None

    @pytest.mark.asyncio
    async def test_backoff_grows_while_failing(self) -> None:
        fetcher = FakeFetcher([_transport_failure()])
        output: asyncio.Queue[FetchResult | None] = asyncio.Queue()
        scheduler = FetchScheduler("mbta", 60.0, 60, fetcher, output)  # type: ignore[arg-type]

        with patch("nextbus_collector.services.fetching.scheduler.INITIAL_RETRY_DELAY_SEC", 0.01):
            scheduler.start()
            # Attempts at 0, 0.01, 0.03, 0.07; the next would be at 0.15.
            await asyncio.sleep(0.11)

        assert scheduler.recovering
        assert scheduler.fetch_count == 4
        assert scheduler.retry_delay_sec == pytest.approx(0.08)
        assert await scheduler.stop(timeout=1.0)

    @pytest.mark.asyncio
    async def test_stop_closes_output(self) -> None:
        fetcher = FakeFetcher([_good(LAST_TIME_MS)])
        output: asyncio.Queue[FetchResult | None] = asyncio.Queue()
        scheduler = FetchScheduler("mbta", 60.0, 60, fetcher, output)  # type: ignore[arg-type]

        scheduler.start()
        await asyncio.sleep(0.02)
        assert await scheduler.stop(timeout=1.0)

        items = await _drain(output)
        assert len(items) == 2
        assert items[-1] is None
        assert scheduler.has_stopped
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_fetch(self) -> None:
        result = _good(LAST_TIME_MS)
        started = asyncio.Event()

        class SlowFetcher:
            async def fetch(self, agency: str, last_time: object, extra_seconds: int) -> FetchResult:
                started.set()
                await asyncio.sleep(0.1)
                return result

        output: asyncio.Queue[FetchResult | None] = asyncio.Queue()
        scheduler = FetchScheduler("mbta", 60.0, 60, SlowFetcher(), output)  # type: ignore[arg-type]

        scheduler.start()
        await asyncio.wait_for(started.wait(), timeout=1.0)
        scheduler.request_stop()
        assert output.empty()
        assert await scheduler.wait_stopped(timeout=1.0)

        assert await _drain(output) == [result, None]
        assert scheduler.fetch_count == 1
