"""Archives every vehicleLocations response, good or bad, into dated tars."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from nextbus_collector.logging import get_logger
from nextbus_collector.models.locations import to_unix_millis
from nextbus_collector.services.archiving.files import ArchiveError, ArchiveInvariantError
from nextbus_collector.services.pipeline.stage import Stage, Wakeup, fatal

if TYPE_CHECKING:
    import asyncio
    from datetime import datetime, tzinfo

    from nextbus_collector.models.responses import FetchResult
    from nextbus_collector.services.archiving.tar_archive import DatedTarArchiver

logger = get_logger(__name__)

ENTRY_NAME_LAYOUT = "%Y%m%d_%H%M%S"
DEFAULT_MAX_CONSECUTIVE_ERRORS = 10

# Header values seen on every normal response; omitted unless the fetch failed.
STANDARD_HEADERS = {
    "access-control-allow-origin": "*",
    "connection": "Keep-Alive",
    "content-type": "text/xml",
    "keep-alive": "timeout=5, max=100",
    "vary": "Accept-Encoding",
    "x-frame-options": "SAMEORIGIN",
}

_WHITESPACE = b" \t\r\n"


def _format_time(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds")


def find_root_element(body: bytes) -> tuple[int, int] | None:
    """Locate the root element, skipping the prolog.

    Returns:
        Tuple of (start of whitespace before the root, offset of the root's
        ``<``), or None when there is no root element to be found.
    """
    offset = 0
    whitespace_start = 0
    length = len(body)
    while offset < length:
        if body[offset] in _WHITESPACE:
            offset += 1
            continue
        if body.startswith(b"<?", offset):
            end = body.find(b"?>", offset + 2)
            if end < 0:
                return None
            offset = end + 2
        elif body.startswith(b"<!--", offset):
            end = body.find(b"-->", offset + 4)
            if end < 0:
                return None
            offset = end + 3
        elif body.startswith(b"<!", offset):
            end = body.find(b">", offset + 2)
            if end < 0:
                return None
            offset = end + 1
        elif body.startswith(b"<", offset):
            return whitespace_start, offset
        else:
            return None
        whitespace_start = offset
    return None


def make_archive_comment(result: FetchResult, clean_for_xml: bool) -> bytes:
    """Request/response metadata recorded alongside the body."""
    lines = [f"URL={result.url}"]
    last_last_millis = to_unix_millis(result.last_last_time)
    if last_last_millis > 0:
        lines.append(f"LastLastTime={last_last_millis} ({_format_time(result.last_last_time)})")
    else:
        lines.append(f"LastLastTime={last_last_millis}")
    lines.append(f"RequestTime={_format_time(result.request_time)}")
    lines.append(f"ResultTime={_format_time(result.response_time)}")

    skip_standard = True
    if result.status_code is not None and result.status_code != httpx.codes.OK:
        lines.append(f"Status={result.status_code} {result.reason}".rstrip())
        lines.append(f"StatusCode={result.status_code}")
        skip_standard = False
    if result.error is not None:
        lines.append(f"Error={result.error!r}")
        skip_standard = False

    if not result.is_transport_failure:
        lines.append("")
        for key, value in sorted(result.headers, key=lambda item: item[0].lower()):
            if skip_standard and STANDARD_HEADERS.get(key.lower()) == value:
                continue
            lines.append(f"{key}: {value}")

    text = "\n".join(lines) + "\n"
    if clean_for_xml:
        text = text.replace("-->", "-%2D>")
    return text.encode("utf-8")


def build_entry(result: FetchResult, tz: tzinfo) -> tuple[str, list[bytes]]:
    """Entry name and content parts for one response.

    XML and HTML bodies get the metadata as a comment just before the root
    element. Other bodies get it appended after a blank line.
    """
    body = result.body
    offsets = None
    if result.body_is_xml:
        ext = ".xml"
        offsets = find_root_element(body)
    elif result.body_is_html:
        ext = ".html"
        offsets = find_root_element(body)

    surround = offsets is not None
    if offsets is None:
        ext = ".unknown"
        before, resume = len(body), len(body)
    else:
        before, resume = offsets

    comment = make_archive_comment(result, clean_for_xml=surround)
    parts: list[bytes] = []
    if before > 0:
        parts.append(body[:before])
    if surround:
        parts.extend((b"\n<!--\n", comment, b"-->\n"))
    else:
        if before > 0:
            parts.append(b"\n\n")
        parts.append(comment)
    if resume < len(body):
        parts.append(body[resume:])

    name = result.archive_timestamp.astimezone(tz).strftime(ENTRY_NAME_LAYOUT) + ext
    return name, parts


class RawArchiver(Stage):
    """Writes each result to the raw tar archive for its date.

    A failed write is logged and counted; more than ``max_consecutive_errors``
    in a row terminates the process. Any success resets the count.
    """

    name = "VLR Archiver"

    def __init__(
        self,
        input_queue: asyncio.Queue[FetchResult | None],
        archiver: DatedTarArchiver,
        tz: tzinfo,
        max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS,
    ) -> None:
        super().__init__()
        self.input_queue = input_queue
        self.archiver = archiver
        self.tz = tz
        self.max_consecutive_errors = max_consecutive_errors
        self.consecutive_errors = 0
        self.archived_count = 0

    def archive(self, result: FetchResult) -> bool:
        """Add one result to the archive; False if it couldn't be written."""
        name, parts = build_entry(result, self.tz)
        try:
            self.archiver.add_file_parts(result.archive_timestamp, name, parts)
            self.archiver.partial_flush()
        except ArchiveInvariantError as exc:
            fatal("Raw archive invariant violated", error=str(exc), entry=name)
        except ArchiveError as exc:
            self.consecutive_errors += 1
            logger.error(
                "Error archiving response",
                entry=name,
                error=str(exc),
                consecutive_errors=self.consecutive_errors,
            )
            if self.consecutive_errors > self.max_consecutive_errors:
                fatal(
                    "Too many consecutive errors archiving responses",
                    consecutive_errors=self.consecutive_errors,
                )
            return False
        self.consecutive_errors = 0
        self.archived_count += 1
        return True

    def close_archive(self) -> None:
        try:
            self.archiver.close()
        except ArchiveError as exc:
            logger.error("Error closing raw archive", error=str(exc))

    async def run(self) -> None:
        while True:
            result = await self.receive(self.input_queue)
            if result is None:
                logger.info("Input closed, closing raw archive", archived=self.archived_count)
                break
            if isinstance(result, Wakeup):
                logger.info("Stop requested, closing raw archive", archived=self.archived_count)
                break
            self.archive(result)
        self.close_archive()
