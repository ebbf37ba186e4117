"""Tests for pipeline assembly and ordered shutdown."""

from __future__ import annotations

import asyncio
import gzip
import tarfile
import time
from pathlib import Path

import pytest

from nextbus_collector.config import Settings
from nextbus_collector.services.pipeline.controller import (
    FetchAndArchiveController,
    ShutdownCoordinator,
    ShutdownReport,
)
from nextbus_collector.services.pipeline.stage import Stage

from .fixtures.nextbus_fixture import FakeFetcher, make_good_result, make_location


class StuckStage(Stage):
    """Ignores its stop signal."""

    name = "Stuck"

    async def run(self) -> None:
        while True:
            await asyncio.sleep(10)


def _controller(settings: Settings) -> FetchAndArchiveController:
    result = make_good_result([make_location("0123"), make_location("0456", lat=42.35)])
    return FetchAndArchiveController(settings, fetcher=FakeFetcher([result]))  # type: ignore[arg-type]


class TestShutdownReport:
    """Unit tests for ShutdownReport."""

    def test_clean(self) -> None:
        assert ShutdownReport().clean
        assert not ShutdownReport(unacknowledged_stages=["CSV Archiver"]).clean
        assert ShutdownReport(undrained_queues=["raw"]).to_dict()["clean"] is False


class TestFetchAndArchiveController:
    """Tests for FetchAndArchiveController."""

    @pytest.mark.asyncio
    async def test_start_and_shutdown_writes_both_archives(self, settings: Settings) -> None:
        controller = _controller(settings)
        controller.start()
        assert controller.is_running
        await asyncio.sleep(0.05)

        status = await controller.get_status()
        assert status["running"] is True
        assert status["fetch_count"] == 1

        report = await controller.shutdown()
        assert report.clean, report.to_dict()
        assert not controller.is_running

        raw = settings.raw_root_dir / "2013" / "12" / "2013-12-04.tar.gz"
        with tarfile.open(raw, "r:gz") as tar:
            assert [info.name for info in tar.getmembers()] == ["20131204_000010.xml"]

        csv_path = settings.processed_root_dir / "2013" / "12" / "2013-12-04.csv.gz"
        with gzip.open(csv_path, "rt", encoding="utf-8") as f:
            rows = f.read().splitlines()
        assert [row.split(",")[1] for row in rows[1:]] == ["0123", "0456"]

    @pytest.mark.asyncio
    async def test_creates_output_directories(self, settings: Settings) -> None:
        controller = _controller(settings)
        controller.start()
        try:
            assert settings.raw_root_dir.is_dir()
            assert settings.processed_root_dir.is_dir()
            assert settings.raw_root_dir == Path(settings.storage_root) / "mbta" / "locations" / "raw"
        finally:
            await controller.shutdown()

    @pytest.mark.asyncio
    async def test_start_twice_is_ignored(self, settings: Settings) -> None:
        controller = _controller(settings)
        controller.start()
        pipeline = controller.pipeline
        controller.start()
        assert controller.pipeline is pipeline
        await controller.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_without_start(self, settings: Settings) -> None:
        controller = _controller(settings)
        report = await controller.shutdown()
        assert report.clean
        status = await controller.get_status()
        assert status["running"] is False
        assert "fetch_count" not in status


class TestShutdownCoordinator:
    """Tests for ShutdownCoordinator."""

    @pytest.mark.asyncio
    async def test_stuck_stage_does_not_block_shutdown(self, settings: Settings) -> None:
        pipeline = _controller(settings).build()
        stuck = StuckStage()
        pipeline.csv_archiver = stuck  # type: ignore[assignment]
        for stage in pipeline.stages:
            stage.start()
        await asyncio.sleep(0.05)

        coordinator = ShutdownCoordinator(pipeline, stage_timeout_sec=0.1, poll_interval_sec=0.01)
        started = time.monotonic()
        report = await coordinator.run()

        assert time.monotonic() - started < 2.0
        assert not report.clean
        assert report.unacknowledged_stages == ["Stuck"]
        assert "csv" in report.undrained_queues
        assert pipeline.raw_archiver.has_stopped
        assert pipeline.aggregator.has_stopped
        assert stuck.has_stopped
        assert not stuck.is_running
