"""Gzipped tar files whose path is chosen by the timestamp of each entry."""

from __future__ import annotations

import gzip
import io
import os
import tarfile
from typing import TYPE_CHECKING, BinaryIO

from nextbus_collector.logging import get_logger
from nextbus_collector.services.archiving.files import (
    ArchiveError,
    ArchiveInvariantError,
    open_unique,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime
    from pathlib import Path

    from nextbus_collector.services.archiving.files import RotationPolicy

logger = get_logger(__name__)

DEFAULT_ENTRY_MODE = 0o444


class TarWriter:
    """tarfile -> GzipFile -> file, flushed and closed together."""

    def __init__(self, path: Path, file: BinaryIO) -> None:
        self.path = path
        self._file = file
        self._gzip = gzip.GzipFile(fileobj=file, mode="wb")
        self._tar = tarfile.open(fileobj=self._gzip, mode="w", format=tarfile.GNU_FORMAT)
        self.entry_count = 0

    def add(self, info: tarfile.TarInfo, payload: bytes) -> None:
        if len(payload) != info.size:
            msg = f"{info.name}: payload is {len(payload)} bytes, header says {info.size}"
            raise ArchiveInvariantError(msg)
        header_len = len(info.tobuf(self._tar.format, self._tar.encoding, self._tar.errors))
        padded = -(-info.size // tarfile.BLOCKSIZE) * tarfile.BLOCKSIZE
        before = self._tar.offset
        self._tar.addfile(info, io.BytesIO(payload))
        written = self._tar.offset - before - header_len
        if written != padded:
            msg = f"{info.name}: wrote {written} bytes, expected {padded}"
            raise ArchiveInvariantError(msg)
        self.entry_count += 1

    def partial_flush(self) -> None:
        # Leaves the compressor state alone.
        self._file.flush()
        os.fsync(self._file.fileno())

    def close(self) -> None:
        try:
            self._tar.close()
            self._gzip.close()
        finally:
            self._file.close()


class DatedTarArchiver:
    """Appends entries to the tar file for their timestamp's date key.

    Entries are expected in roughly increasing time order. A new file is
    opened when the key advances; an entry whose key is earlier than the
    open file's key goes into the open file. Existing files are never
    reused: a new key whose path is taken gets a ``_NNN`` suffix.
    """

    def __init__(
        self,
        root_dir: Path,
        policy: RotationPolicy,
        entry_mode: int = DEFAULT_ENTRY_MODE,
    ) -> None:
        self.root_dir = root_dir
        self.policy = policy
        self.entry_mode = entry_mode
        self._key: datetime | None = None
        self._writer: TarWriter | None = None

    @property
    def current_path(self) -> Path | None:
        return self._writer.path if self._writer is not None else None

    def _writer_for(self, timestamp: datetime) -> TarWriter:
        key = self.policy.key_for(timestamp)
        if self._writer is not None and self._key is not None:
            if key <= self._key:
                if key < self._key:
                    logger.warning(
                        "Entry is older than the open archive, keeping it there",
                        timestamp=timestamp.isoformat(),
                        path=str(self._writer.path),
                    )
                return self._writer
            self.close()

        base = self.root_dir / self.policy.fragment(key)
        path, file = open_unique(base, ".tar.gz")
        try:
            writer = TarWriter(path, file)
        except (OSError, tarfile.TarError) as exc:
            file.close()
            msg = f"Unable to start tar archive {path}: {exc}"
            raise ArchiveError(msg) from exc
        logger.info("Created archive", path=str(path))
        self._writer = writer
        self._key = key
        return writer

    def add_file_parts(self, timestamp: datetime, name: str, parts: Sequence[bytes]) -> int:
        """Add one entry built from ``parts``; returns its size in bytes.

        Raises:
            ArchiveError: On I/O failure.
            ArchiveInvariantError: If the bytes written disagree with the
                declared entry size.
        """
        payload = b"".join(parts)
        info = tarfile.TarInfo(name)
        info.size = sum(len(part) for part in parts)
        info.mtime = int(timestamp.timestamp())
        info.mode = self.entry_mode
        writer = self._writer_for(timestamp)
        try:
            writer.add(info, payload)
        except (OSError, tarfile.TarError) as exc:
            msg = f"Unable to add {name} to {writer.path}: {exc}"
            raise ArchiveError(msg) from exc
        logger.debug("Added entry", name=name, size_bytes=info.size, path=str(writer.path))
        return info.size

    def partial_flush(self) -> None:
        if self._writer is None:
            return
        try:
            self._writer.partial_flush()
        except OSError as exc:
            msg = f"Unable to flush {self._writer.path}: {exc}"
            raise ArchiveError(msg) from exc

    def close(self) -> None:
        """Close the open archive, if any. Safe to call repeatedly."""
        writer, self._writer, self._key = self._writer, None, None
        if writer is None:
            return
        try:
            writer.close()
        except (OSError, tarfile.TarError) as exc:
            msg = f"Unable to close {writer.path}: {exc}"
            raise ArchiveError(msg) from exc
        logger.info("Closed archive", path=str(writer.path), entries=writer.entry_count)
