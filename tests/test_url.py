"""Tests for the t parameter and vehicleLocations URL."""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

from nextbus_collector.models.locations import EPOCH, to_unix_millis
from nextbus_collector.services.fetching.url import build_url, compute_t, url_and_t

NOW = datetime(2014, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestComputeT:
    """Unit tests for compute_t."""

    def test_epoch_cursor_requests_everything(self) -> None:
        assert compute_t(EPOCH, 60, now=NOW) == 0
        assert compute_t(EPOCH, 0, now=NOW) == 0

    def test_cursor_before_epoch_is_zero(self) -> None:
        assert compute_t(EPOCH - timedelta(seconds=1), 60, now=NOW) == 0

    def test_no_overlap_uses_cursor(self) -> None:
        cursor = NOW - timedelta(seconds=30)
        assert compute_t(cursor, 0, now=NOW) == to_unix_millis(cursor)

    def test_no_overlap_stale_cursor_is_zero(self) -> None:
        cursor = NOW - timedelta(minutes=6)
        assert compute_t(cursor, 0, now=NOW) == 0

    def test_overlap_subtracted(self) -> None:
        cursor = NOW - timedelta(seconds=10)
        expected = to_unix_millis(cursor - timedelta(seconds=60))
        assert compute_t(cursor, 60, now=NOW) == expected

    def test_overlap_clamped_to_five_minutes(self) -> None:
        cursor = NOW - timedelta(minutes=4, seconds=30)
        assert compute_t(cursor, 60, now=NOW) == to_unix_millis(NOW - timedelta(minutes=5))


class TestBuildUrl:
    """Unit tests for URL construction."""

    def test_query_parameters(self) -> None:
        url = build_url("http://nextbus.test/service/publicXMLFeed", "mbta", 1234)
        parsed = urlparse(url)

        assert parsed.path == "/service/publicXMLFeed"
        assert parse_qs(parsed.query) == {
            "command": ["vehicleLocations"],
            "a": ["mbta"],
            "t": ["1234"],
        }

    def test_url_and_t_agree(self) -> None:
        cursor = NOW - timedelta(seconds=5)
        url, t = url_and_t("http://nextbus.test/feed", "sf-muni", cursor, 0, now=NOW)

        assert t == to_unix_millis(cursor)
        assert url.endswith(f"&t={t}")
        assert "a=sf-muni" in url
