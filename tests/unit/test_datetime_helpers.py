"""Unit tests for datetime helpers."""
import os
from datetime import datetime
from unittest.mock import patch


class TestTimezone:
    """Tests for get_timezone and now."""

    def test_configured_zone(self):
        """Test CAPS_TIMEZONE selects the zone."""
        from Caps.Core.utils.datetime_helpers import get_timezone, now

        with patch.dict(os.environ, {"CAPS_TIMEZONE": "America/Chicago"}):
            assert get_timezone().zone == "America/Chicago"
            assert now().tzinfo is not None

    def test_unknown_zone_falls_back_to_utc(self):
        """Test an unknown zone name falls back to UTC."""
        from Caps.Core.utils.datetime_helpers import get_timezone

        with patch.dict(os.environ, {"CAPS_TIMEZONE": "Mars/Olympus"}):
            assert get_timezone().zone == "UTC"


class TestParseDatetime:
    """Tests for parse_datetime."""

    def test_iso_with_offset(self):
        """Test ISO 8601 with an offset keeps the offset."""
        from Caps.Core.utils.datetime_helpers import parse_datetime

        result = parse_datetime("2026-02-03T10:00:00.250000+00:00")

        assert result.microsecond == 250000
        assert result.utcoffset().total_seconds() == 0

    def test_database_format(self):
        """Test the plain database timestamp format."""
        from Caps.Core.utils.datetime_helpers import parse_datetime

        assert parse_datetime("2026-02-03 10:00:00") == datetime(2026, 2, 3, 10, 0, 0)

    def test_invalid_or_empty(self):
        """Test unparseable input returns None."""
        from Caps.Core.utils.datetime_helpers import parse_datetime

        assert parse_datetime("not-a-date") is None
        assert parse_datetime(None) is None
        assert parse_datetime("") is None
