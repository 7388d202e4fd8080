"""
Tests for UTC handling and patient-facing time formatting
"""
import pytest
from datetime import datetime, timedelta, timezone
from freezegun import freeze_time

from utils.time_utils import (
    format_for_patient,
    from_epoch_millis,
    now_utc,
    parse_iso_to_utc,
    parse_optional_iso,
    to_epoch_millis,
    to_local_timezone,
    to_utc,
)


class TestTimeUtils:

    @freeze_time("2026-01-15 02:00:00")
    def test_now_utc_is_aware(self):
        current = now_utc()

        assert current.tzinfo is not None
        assert current.utcoffset() == timedelta(0)
        assert current == datetime(2026, 1, 15, 2, 0, tzinfo=timezone.utc)

    def test_parse_naive_iso_assumes_utc(self):
        assert parse_iso_to_utc("2026-01-15T02:00:00") == datetime(2026, 1, 15, 2, 0, tzinfo=timezone.utc)

    def test_parse_offset_iso_converts(self):
        parsed = parse_iso_to_utc("2026-01-15T09:00:00+07:00")

        assert parsed == datetime(2026, 1, 15, 2, 0, tzinfo=timezone.utc)
        assert parsed.utcoffset() == timedelta(0)

    def test_parse_invalid_iso(self):
        with pytest.raises(ValueError):
            parse_iso_to_utc("not a date")

    def test_parse_optional_iso(self):
        assert parse_optional_iso("") is None
        assert parse_optional_iso(None) is None
        assert parse_optional_iso("2026-01-15T02:00:00+00:00").hour == 2

    @pytest.mark.parametrize("zone,expected_hour", [
        ("Asia/Jakarta", 2),     # WIB +7
        ("Asia/Makassar", 1),    # WITA +8
        ("Asia/Jayapura", 0),    # WIT +9
    ])
    def test_naive_local_time_to_utc(self, zone, expected_hour):
        converted = to_utc(datetime(2026, 1, 15, 9, 0), zone)

        assert converted.hour == expected_hour
        assert converted.day == 15

    def test_unknown_timezone_falls_back_to_utc(self):
        assert to_utc(datetime(2026, 1, 15, 9, 0), "Mars/Olympus").hour == 9

    def test_to_local_timezone(self):
        local = to_local_timezone(datetime(2026, 1, 15, 2, 0, tzinfo=timezone.utc))

        assert local.hour == 9
        assert local.tzname() == "WIB"

    def test_format_for_patient(self):
        text = format_for_patient(datetime(2026, 1, 15, 2, 15, tzinfo=timezone.utc))

        assert text == "15/01/2026 09:15 WIB"

    def test_epoch_millis_round_trip_keeps_order(self):
        earlier = datetime(2026, 1, 15, 2, 15, tzinfo=timezone.utc)
        later = earlier + timedelta(milliseconds=1)

        assert to_epoch_millis(earlier) == 1768443300000
        assert to_epoch_millis(later) - to_epoch_millis(earlier) == 1
        assert from_epoch_millis(to_epoch_millis(earlier)) == earlier
