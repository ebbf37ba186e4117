"""Writes aggregated vehicle locations to date-keyed gzipped CSV files."""

from __future__ import annotations

import csv
import gzip
import io
import os
from typing import TYPE_CHECKING, BinaryIO, Union

from nextbus_collector.logging import get_logger
from nextbus_collector.models.locations import CSV_FIELD_NAMES, sort_key_time_and_id
from nextbus_collector.services.archiving.files import ArchiveError, open_exclusive
from nextbus_collector.services.pipeline.stage import Stage, Wakeup

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Iterable
    from datetime import datetime
    from pathlib import Path

    from nextbus_collector.models.locations import VehicleLocation
    from nextbus_collector.services.archiving.files import RotationPolicy

logger = get_logger(__name__)

CSV_SUFFIX = ".csv.gz"
HEADER_ROW = ["# " + CSV_FIELD_NAMES[0], *CSV_FIELD_NAMES[1:]]


class PartialFlush:
    """Request from the aggregator to push buffered rows toward disk."""

    def __repr__(self) -> str:
        return "PartialFlush()"


PARTIAL_FLUSH = PartialFlush()

CSVQueueItem = Union[list["VehicleLocation"], PartialFlush, None]


class CSVWriter:
    """csv.writer -> TextIOWrapper -> GzipFile -> file."""

    def __init__(self, path: Path, file: BinaryIO) -> None:
        self.path = path
        self._file = file
        self._gzip = gzip.GzipFile(fileobj=file, mode="wb")
        self._text = io.TextIOWrapper(self._gzip, encoding="utf-8", newline="")
        self._csv = csv.writer(self._text, lineterminator="\n")
        self.row_count = 0

    def write_header(self) -> None:
        self._csv.writerow(HEADER_ROW)

    def write_location(self, location: VehicleLocation) -> None:
        self._csv.writerow(location.to_csv_fields())
        self.row_count += 1

    def partial_flush(self) -> None:
        # Leaves the compressor state alone.
        self._text.flush()
        self._file.flush()
        os.fsync(self._file.fileno())

    def close(self) -> None:
        try:
            # Closing the text layer closes the GzipFile, which writes the
            # trailer but leaves the underlying file open.
            self._text.close()
            self._file.flush()
            os.fsync(self._file.fileno())
        finally:
            self._file.close()


class CSVArchiver:
    """Appends locations to the CSV file for each location's date key.

    Keys only move forward: a location whose key is earlier than the open
    file's goes into the open file. A file that already exists when its key
    comes up is left untouched, and locations for that key are discarded.
    """

    def __init__(self, root_dir: Path, policy: RotationPolicy) -> None:
        self.root_dir = root_dir
        self.policy = policy
        self._key: datetime | None = None
        self._writer: CSVWriter | None = None
        self._discarding: Path | None = None
        self.written_count = 0
        self.discarded_count = 0

    @property
    def current_path(self) -> Path | None:
        return self._writer.path if self._writer is not None else None

    def path_for_key(self, key: datetime) -> Path:
        return self.root_dir / (self.policy.fragment(key) + CSV_SUFFIX)

    def _open(self, key: datetime) -> None:
        self.close()
        path = self.path_for_key(key)
        self._key = key
        try:
            file = open_exclusive(path)
        except FileExistsError:
            logger.warning("CSV file already exists, discarding its locations", path=str(path))
            self._discarding = path
            return
        except ArchiveError:
            self._key = None
            raise
        except OSError as exc:
            self._key = None
            msg = f"Unable to create {path}: {exc}"
            raise ArchiveError(msg) from exc
        writer = CSVWriter(path, file)
        try:
            writer.write_header()
        except OSError as exc:
            self._key = None
            file.close()
            msg = f"Unable to write header to {path}: {exc}"
            raise ArchiveError(msg) from exc
        logger.info("Created CSV file", path=str(path))
        self._writer = writer

    def add_location(self, location: VehicleLocation) -> None:
        key = self.policy.key_for(location.time)
        if self._key is None or key > self._key:
            self._open(key)
        if self._writer is None:
            self.discarded_count += 1
            return
        try:
            self._writer.write_location(location)
        except (OSError, ValueError) as exc:
            msg = f"Unable to write to {self._writer.path}: {exc}"
            raise ArchiveError(msg) from exc
        self.written_count += 1

    def add_locations(self, locations: Iterable[VehicleLocation]) -> int:
        """Write locations in (time, vehicle id) order; returns the number
        that could not be written."""
        failed = 0
        for location in sorted(locations, key=sort_key_time_and_id):
            try:
                self.add_location(location)
            except ArchiveError as exc:
                failed += 1
                logger.error("Error writing location", vehicle_id=location.vehicle_id, error=str(exc))
        return failed

    def partial_flush(self) -> None:
        if self._writer is None:
            return
        try:
            self._writer.partial_flush()
        except (OSError, ValueError) as exc:
            msg = f"Unable to flush {self._writer.path}: {exc}"
            raise ArchiveError(msg) from exc

    def close(self) -> None:
        """Close the open file, if any. Safe to call repeatedly."""
        writer, self._writer = self._writer, None
        if self._discarding is not None:
            logger.info("Finished discarding locations", path=str(self._discarding))
            self._discarding = None
        if writer is None:
            return
        try:
            writer.close()
        except (OSError, ValueError) as exc:
            msg = f"Unable to close {writer.path}: {exc}"
            raise ArchiveError(msg) from exc
        logger.info("Closed CSV file", path=str(writer.path), rows=writer.row_count)


class CSVArchiverStage(Stage):
    """Consumes location batches and flush requests from the aggregator."""

    name = "CSV Archiver"

    def __init__(
        self,
        input_queue: asyncio.Queue[CSVQueueItem],
        archiver: CSVArchiver,
    ) -> None:
        super().__init__()
        self.input_queue = input_queue
        self.archiver = archiver

    async def run(self) -> None:
        while True:
            item = await self.receive(self.input_queue)
            if item is None:
                logger.info("Input closed, closing CSV archive")
                break
            if isinstance(item, Wakeup):
                logger.info("Stop requested, closing CSV archive")
                break
            if isinstance(item, PartialFlush):
                try:
                    self.archiver.partial_flush()
                except ArchiveError as exc:
                    logger.error("Error flushing CSV archive", error=str(exc))
                continue
            self.archiver.add_locations(item)
        try:
            self.archiver.close()
        except ArchiveError as exc:
            logger.error("Error closing CSV archive", error=str(exc))
        logger.info(
            "CSV archiver finished",
            written=self.archiver.written_count,
            discarded=self.archiver.discarded_count,
        )
