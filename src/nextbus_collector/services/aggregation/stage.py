"""Pipeline stage feeding fetched locations through the aggregator."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from nextbus_collector.logging import get_logger
from nextbus_collector.services.aggregation.aggregator import VehicleAggregator
from nextbus_collector.services.archiving.csv_archiver import PARTIAL_FLUSH
from nextbus_collector.services.pipeline.stage import Stage, Wakeup

if TYPE_CHECKING:
    from nextbus_collector.models.locations import VehicleLocation
    from nextbus_collector.models.responses import FetchResult
    from nextbus_collector.services.archiving.csv_archiver import CSVQueueItem

logger = get_logger(__name__)

DEFAULT_PARTIAL_FLUSH_INTERVAL_SEC = 600.0


def usable_locations(result: FetchResult) -> tuple[VehicleLocation, ...] | None:
    """Locations from a good fetch, or None if the fetch can't be trusted."""
    report = result.report
    if report is None or report.last_time is None:
        return None
    return report.vehicle_locations


class AggregatorStage(Stage):
    """Aggregates each good result's locations and forwards finished records.

    Every ``partial_flush_interval_sec`` it also asks the CSV archiver to
    flush. On end-of-stream or stop it drains the aggregator, then closes
    its output.
    """

    name = "Aggregator"

    def __init__(
        self,
        input_queue: asyncio.Queue[FetchResult | None],
        output: asyncio.Queue[CSVQueueItem],
        aggregator: VehicleAggregator | None = None,
        partial_flush_interval_sec: float = DEFAULT_PARTIAL_FLUSH_INTERVAL_SEC,
    ) -> None:
        super().__init__()
        self.input_queue = input_queue
        self.output = output
        self.aggregator = aggregator if aggregator is not None else VehicleAggregator()
        self.partial_flush_interval_sec = partial_flush_interval_sec
        self.skipped_count = 0

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        flush_at = loop.time() + self.partial_flush_interval_sec
        while True:
            result = await self.receive(self.input_queue, timeout=max(flush_at - loop.time(), 0.0))
            if result is None:
                logger.info("Input closed, draining aggregator")
                break
            if result is Wakeup.STOP:
                logger.info("Stop requested, draining aggregator")
                break
            if not isinstance(result, Wakeup):
                await self.aggregate(result)
            if loop.time() >= flush_at:
                await self.output.put(PARTIAL_FLUSH)
                flush_at = loop.time() + self.partial_flush_interval_sec

        await self.emit(self.aggregator.drain())
        await self.output.put(None)
        logger.info(
            "Aggregator finished",
            inserted=self.aggregator.inserted_count,
            emitted=self.aggregator.emitted_count,
            skipped_results=self.skipped_count,
        )

    async def aggregate(self, result: FetchResult) -> None:
        locations = usable_locations(result)
        if locations is None:
            self.skipped_count += 1
            return
        await self.emit(self.aggregator.insert(locations))

    async def emit(self, locations: list[VehicleLocation]) -> None:
        if locations:
            await self.output.put(locations)
