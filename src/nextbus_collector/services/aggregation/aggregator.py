"""Merges repeated location reports for each vehicle.

The same report is often returned by several consecutive fetches (each
fetch overlaps the previous one by ``extra_seconds``), and the times the
server gives for it vary slightly from fetch to fetch. Reports that differ
only in time are folded together and emitted once, at their average time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from nextbus_collector.logging import get_logger
from nextbus_collector.models.locations import from_unix_millis, sort_key_time_and_id

if TYPE_CHECKING:
    from collections.abc import Iterable

    from nextbus_collector.models.locations import VehicleLocation

logger = get_logger(__name__)


@dataclass
class PendingMerge:
    """Reports for one vehicle that are the same apart from their time."""

    first: VehicleLocation
    count: int = 1
    sum_millis: int = 0

    @classmethod
    def start(cls, location: VehicleLocation) -> PendingMerge:
        return cls(first=location, count=1, sum_millis=location.unix_millis)

    def fold(self, location: VehicleLocation) -> None:
        self.count += 1
        self.sum_millis += location.unix_millis

    def produce_output(self) -> VehicleLocation:
        if self.count == 1:
            return self.first
        # floor(sum / count + 0.5), in integers.
        average = (2 * self.sum_millis + self.count) // (2 * self.count)
        logger.debug(
            "Merged reports",
            vehicle_id=self.first.vehicle_id,
            count=self.count,
            unix_ms=average,
        )
        return self.first.with_time(from_unix_millis(average))


class VehicleAggregator:
    """Per-vehicle merge state across fetched batches.

    A vehicle missing from a (non-empty) batch is taken to have stopped
    reporting, and its pending report is emitted.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingMerge] = {}
        self.inserted_count = 0
        self.emitted_count = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def insert(self, batch: Iterable[VehicleLocation]) -> list[VehicleLocation]:
        """Add one fetch's locations; returns finished records in time order."""
        locations = sorted(batch, key=lambda location: location.vehicle_id)
        if not locations:
            return []

        output: list[VehicleLocation] = []
        seen: set[str] = set()
        for location in locations:
            vehicle_id = location.vehicle_id
            seen.add(vehicle_id)
            self.inserted_count += 1
            pending = self._pending.get(vehicle_id)
            if pending is None:
                self._pending[vehicle_id] = PendingMerge.start(location)
            elif pending.first.is_same_report_except_time(location):
                pending.fold(location)
            else:
                output.append(pending.produce_output())
                self._pending[vehicle_id] = PendingMerge.start(location)

        unseen = [vehicle_id for vehicle_id in self._pending if vehicle_id not in seen]
        for vehicle_id in unseen:
            output.append(self._pending.pop(vehicle_id).produce_output())
        if unseen:
            logger.debug("Vehicles stopped reporting", count=len(unseen))

        return self._finish(output)

    def drain(self) -> list[VehicleLocation]:
        """Emit every pending record, leaving the aggregator empty."""
        output = [pending.produce_output() for pending in self._pending.values()]
        self._pending.clear()
        return self._finish(output)

    def _finish(self, output: list[VehicleLocation]) -> list[VehicleLocation]:
        output.sort(key=sort_key_time_and_id)
        self.emitted_count += len(output)
        return output
