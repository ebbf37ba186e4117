"""Merging of repeated vehicle location reports."""

from nextbus_collector.services.aggregation.aggregator import PendingMerge, VehicleAggregator
from nextbus_collector.services.aggregation.stage import AggregatorStage

__all__ = ["AggregatorStage", "PendingMerge", "VehicleAggregator"]
