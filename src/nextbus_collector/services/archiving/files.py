"""Date-keyed archive paths and archive error types."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO
from zoneinfo import ZoneInfo

from nextbus_collector.logging import get_logger

if TYPE_CHECKING:
    from datetime import datetime, tzinfo

logger = get_logger(__name__)

MAX_UNIQUE_SUFFIX = 999


class ArchiveError(Exception):
    """Raised when an archive file can't be opened, written or closed."""


class ArchiveInvariantError(Exception):
    """Raised when bytes written disagree with the size declared for them."""


@dataclass(frozen=True)
class RotationPolicy:
    """How timestamps map to archive files.

    ``bucket_minutes == 0`` means one file per calendar day; otherwise one
    file per bucket of that many minutes. ``layout`` is a strftime pattern
    for the path fragment (relative to the archive root, no suffix).
    """

    layout: str
    bucket_minutes: int = 0
    tz: tzinfo = ZoneInfo("UTC")

    def key_for(self, timestamp: datetime) -> datetime:
        local = timestamp.astimezone(self.tz)
        if self.bucket_minutes <= 0:
            return local.replace(hour=0, minute=0, second=0, microsecond=0)
        minute = local.minute - local.minute % self.bucket_minutes
        return local.replace(minute=minute, second=0, microsecond=0)

    def fragment(self, key: datetime) -> str:
        return key.strftime(self.layout)


DAILY_RAW_LAYOUT = "%Y/%m/%Y-%m-%d"
DEBUG_RAW_LAYOUT = "%Y/%m/%d/%H/%Y-%m-%d_%H%M"
DAILY_CSV_LAYOUT = "%Y/%m/%Y-%m-%d"
DEBUG_CSV_LAYOUT = "%Y/%m/%d/%H/%Y-%m-%d_%H%M"


def raw_rotation_policy(tz: tzinfo, debug: bool = False) -> RotationPolicy:
    if debug:
        return RotationPolicy(DEBUG_RAW_LAYOUT, bucket_minutes=1, tz=tz)
    return RotationPolicy(DAILY_RAW_LAYOUT, tz=tz)


def csv_rotation_policy(tz: tzinfo, debug: bool = False) -> RotationPolicy:
    if debug:
        return RotationPolicy(DEBUG_CSV_LAYOUT, bucket_minutes=2, tz=tz)
    return RotationPolicy(DAILY_CSV_LAYOUT, tz=tz)


def open_exclusive(path: Path) -> BinaryIO:
    """Create ``path`` (and its parents) for writing.

    Raises:
        FileExistsError: Only if ``path`` itself already exists.
        ArchiveError: If the parent directory can't be created.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        msg = f"Unable to create directory {path.parent}: {exc}"
        raise ArchiveError(msg) from exc
    return path.open("xb")


def open_unique(base: Path, suffix: str) -> tuple[Path, BinaryIO]:
    """Create ``<base><suffix>``, or the first free ``<base>_NNN<suffix>``.

    Raises:
        ArchiveError: If no free name exists or the file can't be created.
    """
    candidates = [base.with_name(base.name + suffix)]
    candidates.extend(
        base.with_name(f"{base.name}_{n:03d}{suffix}") for n in range(1, MAX_UNIQUE_SUFFIX + 1)
    )
    for path in candidates:
        try:
            return path, open_exclusive(path)
        except FileExistsError:
            continue
        except OSError as exc:
            msg = f"Unable to create {path}: {exc}"
            raise ArchiveError(msg) from exc
    msg = f"No unused archive name for {base}{suffix}"
    raise ArchiveError(msg)
