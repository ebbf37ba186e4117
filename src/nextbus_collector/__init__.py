"""Collector for NextBus vehicle locations: raw archives and daily CSVs."""

__version__ = "0.1.0"
