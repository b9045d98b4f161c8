"""Tests for dunning_notifier.clock -- timestamp parsing and calendar-day math."""

from datetime import datetime, timezone

import pytest

from dunning_notifier.clock import CalendarClock, parse_timestamp, resolve_zone
from dunning_notifier.exceptions import InvalidTimestamp

from .conftest import FIXED_NOW, SAO_PAULO


class TestParseTimestamp:

    def test_iso_with_z_suffix(self):
        parsed = parse_timestamp("2026-10-07T15:00:00Z")
        assert parsed == datetime(2026, 10, 7, 15, 0, tzinfo=timezone.utc)

    def test_iso_with_offset(self):
        parsed = parse_timestamp("2026-10-07T12:00:00-03:00")
        assert parsed.astimezone(timezone.utc).hour == 15

    def test_postgres_style_offset_and_fraction(self):
        parsed = parse_timestamp("2026-10-07 09:15:00.12345+00")
        assert parsed == datetime(2026, 10, 7, 9, 15, 0, 123450, tzinfo=timezone.utc)

    def test_naive_string_is_utc(self):
        parsed = parse_timestamp("2026-10-07 08:30:00")
        assert parsed.tzinfo == timezone.utc
        assert parsed.hour == 8

    def test_naive_datetime_is_utc(self):
        parsed = parse_timestamp(datetime(2026, 10, 7, 8, 30))
        assert parsed.tzinfo == timezone.utc

    def test_aware_datetime_passes_through(self):
        value = datetime(2026, 10, 7, 8, 30, tzinfo=SAO_PAULO)
        assert parse_timestamp(value) is value

    def test_legacy_day_month_year(self):
        parsed = parse_timestamp("07-10-2026")
        assert parsed == datetime(2026, 10, 7, tzinfo=timezone.utc)

    def test_legacy_with_trailing_time_ignored(self):
        parsed = parse_timestamp("07-10-2026 17:45")
        assert parsed == datetime(2026, 10, 7, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["", "   ", "not a date", "2026-13-45", "31-02-2026", None, 12345])
    def test_malformed_raises(self, value):
        with pytest.raises(InvalidTimestamp):
            parse_timestamp(value)


class TestResolveZone:

    def test_known_zone(self):
        assert resolve_zone("America/Sao_Paulo").key == "America/Sao_Paulo"

    def test_unknown_zone(self):
        with pytest.raises(ValueError, match="Unknown timezone"):
            resolve_zone("Mars/Olympus_Mons")


class TestCalendarClock:

    def test_now_is_in_clock_timezone(self, clock):
        now = clock.now()
        assert now == FIXED_NOW
        assert now.utcoffset() == FIXED_NOW.utcoffset()

    def test_naive_injected_now_treated_as_utc(self):
        clock = CalendarClock(now=lambda: datetime(2026, 10, 14, 2, 0))
        # 02:00 UTC is 23:00 the previous day in Sao Paulo
        assert clock.now().day == 13

    def test_exactly_seven_days(self, clock):
        origin = datetime(2026, 10, 7, 12, 0, tzinfo=SAO_PAULO)
        assert clock.elapsed_days(origin) == 7

    def test_counts_calendar_days_not_24h_periods(self):
        # 23:50 local on the 13th vs 00:10 local on the 14th is one day
        now = datetime(2026, 10, 14, 0, 10, tzinfo=SAO_PAULO)
        clock = CalendarClock(now=lambda: now)
        origin = datetime(2026, 10, 13, 23, 50, tzinfo=SAO_PAULO)
        assert clock.elapsed_days(origin) == 1

    def test_uses_configured_zone_not_utc_date(self):
        # 01:00 UTC on the 8th is still the 7th in Sao Paulo
        clock = CalendarClock(now=lambda: FIXED_NOW)
        assert clock.elapsed_days("2026-10-08T01:00:00Z") == 7

    def test_same_day_is_zero(self, clock):
        assert clock.elapsed_days(FIXED_NOW.replace(hour=1)) == 0

    def test_future_origin_clamped_to_zero(self, clock):
        assert clock.elapsed_days("2026-12-01T00:00:00Z") == 0

    def test_legacy_origin(self, clock):
        # UTC midnight of 04-10 is 21:00 on 03-10 in Sao Paulo
        assert clock.elapsed_days("04-10-2026") == 11

    def test_invalid_origin_raises(self, clock):
        with pytest.raises(InvalidTimestamp):
            clock.elapsed_days("yesterday")

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValueError):
            CalendarClock("Nowhere/Special")
