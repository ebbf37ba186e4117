"""Assembly of the fetch-archive-aggregate pipeline and its ordered shutdown."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from nextbus_collector.config import get_settings
from nextbus_collector.logging import get_logger
from nextbus_collector.services.aggregation.stage import AggregatorStage
from nextbus_collector.services.archiving.csv_archiver import CSVArchiver, CSVArchiverStage
from nextbus_collector.services.archiving.files import csv_rotation_policy, raw_rotation_policy
from nextbus_collector.services.archiving.raw_archiver import RawArchiver
from nextbus_collector.services.archiving.tar_archive import DatedTarArchiver
from nextbus_collector.services.fetching.fetcher import VehicleLocationsFetcher
from nextbus_collector.services.fetching.scheduler import FetchScheduler
from nextbus_collector.services.pipeline.distributor import Distributor

if TYPE_CHECKING:
    from nextbus_collector.config import Settings
    from nextbus_collector.models.responses import FetchResult
    from nextbus_collector.services.archiving.csv_archiver import CSVQueueItem
    from nextbus_collector.services.pipeline.stage import Stage

logger = get_logger(__name__)


@dataclass
class ShutdownReport:
    """Outcome of an ordered shutdown."""

    started_at: str = ""
    ended_at: str = ""
    duration_ms: int = 0
    undrained_queues: list[str] = field(default_factory=list)
    unacknowledged_stages: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.undrained_queues and not self.unacknowledged_stages

    def to_dict(self) -> dict[str, Any]:
        return {
            "clean": self.clean,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_ms": self.duration_ms,
            "undrained_queues": self.undrained_queues,
            "unacknowledged_stages": self.unacknowledged_stages,
        }


@dataclass
class Pipeline:
    """The stages and the queues connecting them."""

    fetch_queue: asyncio.Queue[FetchResult | None]
    raw_queue: asyncio.Queue[FetchResult | None]
    aggregate_queue: asyncio.Queue[FetchResult | None]
    csv_queue: asyncio.Queue[CSVQueueItem]
    scheduler: FetchScheduler
    distributor: Distributor
    raw_archiver: RawArchiver
    aggregator: AggregatorStage
    csv_archiver: CSVArchiverStage

    @property
    def stages(self) -> tuple[Stage, ...]:
        # Consumers before producers.
        return (
            self.csv_archiver,
            self.aggregator,
            self.raw_archiver,
            self.distributor,
            self.scheduler,
        )


class ShutdownCoordinator:
    """Stops the pipeline front to back so that nothing buffered is lost.

    Each wait is bounded by ``stage_timeout_sec``. A stage that never
    acknowledges its stop is cancelled once the sequence is over.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        stage_timeout_sec: float = 20.0,
        poll_interval_sec: float = 0.02,
    ) -> None:
        self.pipeline = pipeline
        self.stage_timeout_sec = stage_timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self._report = ShutdownReport()

    async def wait_for_empty(self, queue: asyncio.Queue[Any], name: str) -> bool:
        """Poll until ``queue`` is empty; False if it wasn't within the timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.stage_timeout_sec
        while queue.qsize() > 0:
            if loop.time() >= deadline:
                logger.error("Queue did not drain", queue=name, pending=queue.qsize())
                self._report.undrained_queues.append(name)
                return False
            await asyncio.sleep(self.poll_interval_sec)
        return True

    async def stop_stage(self, stage: Stage) -> bool:
        logger.info("Stopping stage", stage=stage.name)
        if await stage.stop(self.stage_timeout_sec):
            return True
        logger.error("Stage did not acknowledge stop", stage=stage.name, timeout_sec=self.stage_timeout_sec)
        self._report.unacknowledged_stages.append(stage.name)
        return False

    async def run(self) -> ShutdownReport:
        started = time.monotonic()
        self._report = ShutdownReport(started_at=datetime.now(timezone.utc).isoformat())
        p = self.pipeline
        logger.info("Shutting down pipeline")

        if not await self.stop_stage(p.scheduler):
            # The scheduler closes its output when it stops; do it for it.
            await self._close(p.fetch_queue, "fetch")

        await self.wait_for_empty(p.fetch_queue, "fetch")
        if not await p.distributor.wait_stopped(self.stage_timeout_sec):
            await self.stop_stage(p.distributor)

        await self.wait_for_empty(p.raw_queue, "raw")
        await self.stop_stage(p.raw_archiver)

        await self.wait_for_empty(p.aggregate_queue, "aggregate")
        await self.stop_stage(p.aggregator)
        await self.wait_for_empty(p.csv_queue, "csv")
        await self.stop_stage(p.csv_archiver)

        for stage in p.stages:
            if not stage.has_stopped:
                await stage.cancel()

        self._report.ended_at = datetime.now(timezone.utc).isoformat()
        self._report.duration_ms = int((time.monotonic() - started) * 1000)
        if self._report.clean:
            logger.info("Pipeline shut down cleanly", duration_ms=self._report.duration_ms)
        else:
            logger.warning("Pipeline shut down with problems", report=self._report.to_dict())
        return self._report

    async def _close(self, queue: asyncio.Queue[Any], name: str) -> None:
        try:
            await asyncio.wait_for(queue.put(None), timeout=self.stage_timeout_sec)
        except asyncio.TimeoutError:
            logger.error("Unable to close queue", queue=name)


class FetchAndArchiveController:
    """Owns the pipeline: builds it from settings, starts it and stops it.

    Usage:
        controller = FetchAndArchiveController()
        controller.start()
        ...
        report = await controller.shutdown()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        fetcher: VehicleLocationsFetcher | None = None,
    ) -> None:
        self.settings = settings if settings is not None else get_settings()
        self._fetcher = fetcher
        self._pipeline: Pipeline | None = None
        self._shutdown_task: asyncio.Task[ShutdownReport] | None = None
        self._started_at: datetime | None = None
        self._last_report: ShutdownReport | None = None

    @property
    def pipeline(self) -> Pipeline | None:
        return self._pipeline

    @property
    def is_running(self) -> bool:
        return self._pipeline is not None and self._shutdown_task is None

    def build(self) -> Pipeline:
        s = self.settings
        tz = ZoneInfo(s.archive_timezone)
        raw_dir = s.raw_root_dir
        processed_dir = s.processed_root_dir
        raw_dir.mkdir(parents=True, exist_ok=True)
        processed_dir.mkdir(parents=True, exist_ok=True)

        capacity = s.queue_capacity
        fetch_queue: asyncio.Queue[FetchResult | None] = asyncio.Queue(maxsize=capacity)
        raw_queue: asyncio.Queue[FetchResult | None] = asyncio.Queue(maxsize=capacity)
        aggregate_queue: asyncio.Queue[FetchResult | None] = asyncio.Queue(maxsize=capacity)
        csv_queue: asyncio.Queue[CSVQueueItem] = asyncio.Queue(maxsize=capacity)

        fetcher = self._fetcher or VehicleLocationsFetcher(
            base_url=s.nextbus_base_url,
            timeout_sec=s.fetch_timeout_sec,
        )
        return Pipeline(
            fetch_queue=fetch_queue,
            raw_queue=raw_queue,
            aggregate_queue=aggregate_queue,
            csv_queue=csv_queue,
            scheduler=FetchScheduler(
                agency=s.agency,
                interval_sec=s.effective_fetch_interval_sec,
                extra_seconds=s.extra_seconds,
                fetcher=fetcher,
                output=fetch_queue,
            ),
            distributor=Distributor(fetch_queue, (raw_queue, aggregate_queue)),
            raw_archiver=RawArchiver(
                raw_queue,
                DatedTarArchiver(raw_dir, raw_rotation_policy(tz, s.debug_archiving)),
                tz=tz,
                max_consecutive_errors=s.max_consecutive_archive_errors,
            ),
            aggregator=AggregatorStage(
                aggregate_queue,
                csv_queue,
                partial_flush_interval_sec=s.effective_partial_flush_interval_sec,
            ),
            csv_archiver=CSVArchiverStage(
                csv_queue,
                CSVArchiver(processed_dir, csv_rotation_policy(tz, s.debug_archiving)),
            ),
        )

    def start(self) -> None:
        """Build the pipeline and start every stage."""
        if self._pipeline is not None:
            logger.warning("Pipeline already started, ignoring start request")
            return
        self._pipeline = self.build()
        self._started_at = datetime.now(timezone.utc)
        for stage in self._pipeline.stages:
            stage.start()
        logger.info(
            "Pipeline started",
            agency=self.settings.agency,
            raw_dir=str(self.settings.raw_root_dir),
            processed_dir=str(self.settings.processed_root_dir),
            interval_sec=self.settings.effective_fetch_interval_sec,
        )

    async def shutdown(self) -> ShutdownReport:
        """Run the ordered shutdown; concurrent callers share one run."""
        if self._pipeline is None:
            return self._last_report or ShutdownReport()
        if self._shutdown_task is None:
            coordinator = ShutdownCoordinator(
                self._pipeline,
                stage_timeout_sec=self.settings.stage_timeout_sec,
                poll_interval_sec=self.settings.drain_poll_interval_sec,
            )
            self._shutdown_task = asyncio.create_task(coordinator.run())
        report = await asyncio.shield(self._shutdown_task)
        self._last_report = report
        self._pipeline = None
        self._shutdown_task = None
        return report

    async def get_status(self) -> dict[str, Any]:
        """Current pipeline status for health/admin endpoints."""
        p = self._pipeline
        status: dict[str, Any] = {
            "running": self.is_running,
            "agency": self.settings.agency,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "interval_sec": self.settings.effective_fetch_interval_sec,
            "last_shutdown": self._last_report.to_dict() if self._last_report else None,
        }
        if p is None:
            return status
        status.update(
            {
                "fetch_count": p.scheduler.fetch_count,
                "failure_count": p.scheduler.failure_count,
                "recovering": p.scheduler.recovering,
                "last_time": p.scheduler.last_time.isoformat(),
                "archived_count": p.raw_archiver.archived_count,
                "csv_rows_written": p.csv_archiver.archiver.written_count,
                "pending_vehicles": p.aggregator.aggregator.pending_count,
                "queues": {
                    "fetch": p.fetch_queue.qsize(),
                    "raw": p.raw_queue.qsize(),
                    "aggregate": p.aggregate_queue.qsize(),
                    "csv": p.csv_queue.qsize(),
                },
                "stages": {stage.name: stage.is_running for stage in p.stages},
            }
        )
        return status


# Singleton instance for the app lifecycle
_controller_instance: FetchAndArchiveController | None = None


def get_controller() -> FetchAndArchiveController:
    """Get or create the singleton controller instance."""
    global _controller_instance
    if _controller_instance is None:
        _controller_instance = FetchAndArchiveController()
    return _controller_instance


def reset_controller() -> None:
    """Reset the singleton (for testing)."""
    global _controller_instance
    _controller_instance = None
