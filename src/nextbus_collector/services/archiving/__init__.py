"""Raw tar and aggregated CSV archives."""

from nextbus_collector.services.archiving.csv_archiver import (
    PARTIAL_FLUSH,
    CSVArchiver,
    CSVArchiverStage,
    PartialFlush,
)
from nextbus_collector.services.archiving.files import (
    ArchiveError,
    ArchiveInvariantError,
    RotationPolicy,
    csv_rotation_policy,
    raw_rotation_policy,
)
from nextbus_collector.services.archiving.raw_archiver import RawArchiver
from nextbus_collector.services.archiving.tar_archive import DatedTarArchiver

__all__ = [
    "PARTIAL_FLUSH",
    "ArchiveError",
    "ArchiveInvariantError",
    "CSVArchiver",
    "CSVArchiverStage",
    "DatedTarArchiver",
    "PartialFlush",
    "RawArchiver",
    "RotationPolicy",
    "csv_rotation_policy",
    "raw_rotation_policy",
]
