from datetime import datetime, timedelta, timezone

import pytest

from iptv_cache.errors import ValidationError
from iptv_cache.utils.timezone import (
    DEFAULT_UPDATE_INTERVAL,
    format_local_time,
    parse_timezone_offset,
    parse_update_interval,
    parse_xmltv_time,
    resolve_timezone_offset,
    resolve_update_interval,
)


class TestParseXmltvTime:

    def test_applies_explicit_offset(self):
        parsed = parse_xmltv_time("20250310113000 +0100")
        assert parsed == datetime(2025, 3, 10, 10, 30, tzinfo=timezone.utc)

    def test_negative_offset(self):
        parsed = parse_xmltv_time("20080715003000 -0600")
        assert parsed == datetime(2008, 7, 15, 6, 30, tzinfo=timezone.utc)

    def test_offset_without_space(self):
        assert parse_xmltv_time("20250310100000+0000") == datetime(2025, 3, 10, 10, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [
        None,
        "",
        "20250310100000",
        "2025-03-10 10:00",
        "20251310100000 +0000",
        "20250310100000 CET",
    ])
    def test_unparsable_values_return_none(self, value):
        assert parse_xmltv_time(value) is None


class TestUpdateInterval:

    def test_parses_hours_and_minutes(self):
        assert parse_update_interval("02:30") == timedelta(hours=2, minutes=30)
        assert parse_update_interval("0:05") == timedelta(minutes=5)

    @pytest.mark.parametrize("value", ["24:00", "12:60", "12", "abc", "1:2"])
    def test_rejects_malformed(self, value):
        with pytest.raises(ValidationError):
            parse_update_interval(value)

    def test_resolve_falls_back_to_default(self, caplog):
        assert resolve_update_interval("99:99") == DEFAULT_UPDATE_INTERVAL
        assert resolve_update_interval(None) == timedelta(hours=12)
        assert "using default" in caplog.text


class TestTimezoneOffset:

    def test_parse_offset(self):
        assert parse_timezone_offset("+2:00").utcoffset(None) == timedelta(hours=2)
        assert parse_timezone_offset("-05:30").utcoffset(None) == -timedelta(hours=5, minutes=30)

    def test_resolve_falls_back_to_default(self):
        label, tz = resolve_timezone_offset("CET")
        assert label == "+2:00"
        assert tz.utcoffset(None) == timedelta(hours=2)

    def test_format_local_time(self):
        tz = parse_timezone_offset("+1:00")
        value = datetime(2025, 3, 10, 10, 5, tzinfo=timezone.utc)
        assert format_local_time(value, tz) == "11:05"
        assert format_local_time(None, tz) == ""
