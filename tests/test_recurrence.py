"""Tests for recurrence rules and the next-trigger resolver."""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from bell_dispatch.reminders.exceptions import RuleInvalid
from bell_dispatch.reminders.recurrence_models import (
    MONDAY,
    SATURDAY,
    SUNDAY,
    DateFilter,
    RecurrenceCalculator,
    RecurrenceRule,
    ScheduleType,
    civil_weekday,
    nth_weekday_of_month,
)
from bell_dispatch.utils.timezone import to_local_naive
from tests.conftest import utc

UTC = timezone.utc
resolve = RecurrenceCalculator.calculate_next_occurrence


def rule(**data):
    return RecurrenceRule.from_dict(data)


class TestScenarios:
    def test_weekly_jumps_to_next_matching_weekday(self):
        r = rule(type="weekly", dayOfWeek=MONDAY, hour=10, minute=0, interval=1)
        # Wednesday 09:00 -> following Monday 10:00
        assert resolve(r, UTC, utc(2026, 10, 21, 9, 0)) == utc(2026, 10, 26, 10, 0)

    def test_monthly_fifth_weekday_skips_short_month(self):
        r = rule(type="monthly", weekOfMonth=5, dayOfWeek=MONDAY, hour=10, minute=0)
        # July 2026 has four Mondays, August has five
        assert resolve(r, UTC, utc(2026, 7, 1, 9, 0)) == utc(2026, 8, 31, 10, 0)

    def test_monthly_fifth_weekday_beyond_two_months(self):
        r = rule(type="monthly", weekOfMonth=5, dayOfWeek=MONDAY, hour=10, minute=0)
        # September and October 2026 both have four Mondays
        assert resolve(r, UTC, utc(2026, 9, 1, 9, 0)) == utc(2026, 11, 30, 10, 0)

    def test_specific_days_wraps_to_weekend(self):
        r = rule(type="specific_days", selectedDays=[SATURDAY, SUNDAY], hour=8, minute=0)
        # Tuesday 09:00 -> Saturday 08:00
        assert resolve(r, UTC, utc(2026, 10, 20, 9, 0)) == utc(2026, 10, 24, 8, 0)


class TestPerKind:
    def test_daily_later_today(self):
        r = rule(type="daily", hour=10, minute=30)
        assert resolve(r, UTC, utc(2026, 10, 19, 9, 0)) == utc(2026, 10, 19, 10, 30)

    def test_daily_time_passed_moves_by_interval(self):
        r = rule(type="daily", interval=2, hour=8, minute=0)
        assert resolve(r, UTC, utc(2026, 10, 19, 9, 0)) == utc(2026, 10, 21, 8, 0)

    def test_daily_equal_to_reference_is_not_returned(self):
        r = rule(type="daily", hour=9, minute=0)
        assert resolve(r, UTC, utc(2026, 10, 19, 9, 0)) == utc(2026, 10, 20, 9, 0)

    def test_daily_weekdays_filter_skips_weekend(self):
        r = rule(type="daily", hour=8, minute=0, dateFilter="weekdays")
        # Friday after 08:00 -> Monday
        assert resolve(r, UTC, utc(2026, 10, 23, 9, 0)) == utc(2026, 10, 26, 8, 0)

    def test_daily_weekends_filter(self):
        r = rule(type="daily", hour=8, minute=0, dateFilter="weekends")
        assert resolve(r, UTC, utc(2026, 10, 19, 7, 0)) == utc(2026, 10, 24, 8, 0)

    def test_interval_days(self):
        r = rule(type="interval", interval=3, hour=8, minute=0)
        assert resolve(r, UTC, utc(2026, 10, 19, 9, 0)) == utc(2026, 10, 22, 8, 0)
        assert resolve(r, UTC, utc(2026, 10, 19, 7, 0)) == utc(2026, 10, 19, 8, 0)

    def test_weekly_same_day_passed_uses_interval_weeks(self):
        r = rule(type="weekly", dayOfWeek=MONDAY, hour=10, minute=0, interval=2)
        assert resolve(r, UTC, utc(2026, 10, 19, 11, 0)) == utc(2026, 11, 2, 10, 0)

    def test_weekly_same_day_later_time(self):
        r = rule(type="weekly", dayOfWeek=MONDAY, hour=10, minute=0)
        assert resolve(r, UTC, utc(2026, 10, 19, 9, 0)) == utc(2026, 10, 19, 10, 0)

    def test_specific_days_same_day_later(self):
        r = rule(type="specific_days", selectedDays=[MONDAY, 3], hour=18, minute=0)
        assert resolve(r, UTC, utc(2026, 10, 19, 9, 0)) == utc(2026, 10, 19, 18, 0)

    def test_specific_days_single_day_passed_wraps_a_week(self):
        r = rule(type="specific_days", selectedDays=[MONDAY], hour=8, minute=0)
        assert resolve(r, UTC, utc(2026, 10, 19, 9, 0)) == utc(2026, 10, 26, 8, 0)

    def test_monthly_same_month(self):
        r = rule(type="monthly", weekOfMonth=2, dayOfWeek=MONDAY, hour=10, minute=0)
        assert resolve(r, UTC, utc(2026, 10, 1, 0, 0)) == utc(2026, 10, 12, 10, 0)

    def test_monthly_occurrence_passed_moves_to_next_month(self):
        r = rule(type="monthly", weekOfMonth=1, dayOfWeek=MONDAY, hour=10, minute=0)
        assert resolve(r, UTC, utc(2026, 10, 19, 0, 0)) == utc(2026, 11, 2, 10, 0)


class TestTimezones:
    def test_rule_time_is_local_civil_time(self):
        r = rule(type="daily", hour=8, minute=0)
        tokyo = ZoneInfo("Asia/Tokyo")
        # 09:00 JST on the 19th -> 08:00 JST on the 20th
        assert resolve(r, tokyo, utc(2026, 10, 19, 0, 0)) == utc(2026, 10, 19, 23, 0)

    def test_weekday_is_evaluated_in_local_calendar(self):
        r = rule(type="weekly", dayOfWeek=MONDAY, hour=7, minute=0)
        tokyo = ZoneInfo("Asia/Tokyo")
        # Sunday 23:00 UTC is already Monday 08:00 in Tokyo, past 07:00
        result = resolve(r, tokyo, utc(2026, 10, 18, 23, 0))
        assert to_local_naive(result, tokyo) == datetime(2026, 10, 26, 7, 0)

    @pytest.mark.parametrize("start", [utc(2026, 3, 6, 12, 0), utc(2026, 10, 30, 12, 0)])
    def test_forward_progress_across_dst_transitions(self, start):
        new_york = ZoneInfo("America/New_York")
        for hour, minute in ((2, 30), (1, 30), (0, 0)):
            r = rule(type="daily", hour=hour, minute=minute)
            current = start
            for _ in range(6):
                following = resolve(r, new_york, current)
                assert following is not None
                assert following > current
                current = following

    def test_returns_utc_aware(self):
        r = rule(type="daily", hour=8, minute=0)
        result = resolve(r, ZoneInfo("Europe/Berlin"), utc(2026, 10, 19, 0, 0))
        assert result.tzinfo == UTC


RULES = [
    {"type": "daily", "hour": 0, "minute": 0},
    {"type": "daily", "hour": 23, "minute": 59, "interval": 3, "dateFilter": "weekdays"},
    {"type": "daily", "hour": 12, "minute": 15, "dateFilter": "weekends"},
    {"type": "interval", "hour": 6, "minute": 0, "interval": 10},
    {"type": "weekly", "hour": 18, "minute": 45, "dayOfWeek": SUNDAY, "dateFilter": "weekends"},
    {"type": "weekly", "hour": 9, "minute": 0, "dayOfWeek": 3, "interval": 4},
    {"type": "specific_days", "hour": 7, "minute": 30, "selectedDays": [1, 3, 5]},
    {"type": "specific_days", "hour": 7, "minute": 30, "selectedDays": [0, 1, 6], "dateFilter": "weekdays"},
    {"type": "monthly", "hour": 10, "minute": 0, "weekOfMonth": 5, "dayOfWeek": 2},
    {"type": "monthly", "hour": 0, "minute": 0, "weekOfMonth": 1, "dayOfWeek": 6},
]
ZONES = ["UTC", "Asia/Tokyo", "America/New_York", "Australia/Lord_Howe"]
REFERENCES = [utc(2026, 1, 1, 0, 0), utc(2026, 3, 8, 7, 30), utc(2026, 10, 31, 23, 59), utc(2028, 2, 29, 12, 0)]


class TestProperties:
    @pytest.mark.parametrize("data", RULES)
    @pytest.mark.parametrize("zone", ZONES)
    def test_strictly_forward_and_filter_respected(self, data, zone):
        r = RecurrenceRule.from_dict(data)
        tz = ZoneInfo(zone)
        for reference in REFERENCES:
            current = reference
            for _ in range(4):
                following = resolve(r, tz, current)
                assert following is not None
                assert following > current
                local = to_local_naive(following, tz)
                if r.type != ScheduleType.INTERVAL:
                    assert r.allows(local.date())
                if r.type in (ScheduleType.WEEKLY, ScheduleType.MONTHLY):
                    assert civil_weekday(local.date()) == r.day_of_week
                current = following

    def test_calculate_next_after_absorbs_backlog(self):
        r = rule(type="daily", hour=10, minute=0)
        now = utc(2026, 10, 19, 12, 0)
        result = RecurrenceCalculator.calculate_next_after(r, UTC, utc(2026, 10, 1, 10, 0), now)
        assert result == utc(2026, 10, 20, 10, 0)

    def test_calculate_next_after_restarts_from_now_when_backlog_too_long(self):
        r = rule(type="daily", hour=10, minute=0)
        now = utc(2026, 10, 19, 12, 0)
        result = RecurrenceCalculator.calculate_next_after(
            r, UTC, utc(2020, 1, 1, 10, 0), now, max_steps=5
        )
        assert result == utc(2026, 10, 20, 10, 0)


class TestRuleParsing:
    def test_kind_alias_and_defaults(self):
        r = RecurrenceRule.from_dict({"kind": "daily", "hour": 8, "minute": 5})
        assert r.type == ScheduleType.DAILY
        assert r.interval == 1
        assert r.date_filter == DateFilter.ALL

    def test_round_trip_preserves_stored_shape(self):
        data = {"type": "specific_days", "interval": 1, "hour": 7, "minute": 0,
                "dateFilter": "all", "selectedDays": [0, 6]}
        assert RecurrenceRule.from_dict(data).to_dict() == data

    def test_interval_rule_ignores_date_filter(self):
        r = rule(type="interval", interval=2, hour=8, minute=0, dateFilter="weekends")
        assert r.date_filter == DateFilter.ALL

    def test_whole_floats_accepted(self):
        assert rule(type="daily", hour=8.0, minute=0).hour == 8

    @pytest.mark.parametrize("data", [
        {"type": "hourly", "hour": 1, "minute": 0},
        {"type": "daily", "minute": 0},
        {"type": "daily", "hour": 24, "minute": 0},
        {"type": "daily", "hour": 8, "minute": 60},
        {"type": "daily", "hour": True, "minute": 0},
        {"type": "daily", "hour": "8", "minute": 0},
        {"type": "daily", "hour": 8.5, "minute": 0},
        {"type": "daily", "hour": 8, "minute": 0, "interval": 0},
        {"type": "daily", "hour": 8, "minute": 0, "dateFilter": "holidays"},
        {"type": "weekly", "hour": 8, "minute": 0},
        {"type": "weekly", "hour": 8, "minute": 0, "dayOfWeek": 7},
        {"type": "monthly", "hour": 8, "minute": 0, "dayOfWeek": 1},
        {"type": "monthly", "hour": 8, "minute": 0, "dayOfWeek": 1, "weekOfMonth": 6},
        {"type": "specific_days", "hour": 8, "minute": 0},
        {"type": "specific_days", "hour": 8, "minute": 0, "selectedDays": []},
        {"type": "specific_days", "hour": 8, "minute": 0, "selectedDays": "0,6"},
        {"type": "weekly", "hour": 8, "minute": 0, "dayOfWeek": SUNDAY, "dateFilter": "weekdays"},
        {"type": "monthly", "hour": 8, "minute": 0, "dayOfWeek": MONDAY, "weekOfMonth": 1,
         "dateFilter": "weekends"},
        {"type": "specific_days", "hour": 8, "minute": 0, "selectedDays": [0, 6], "dateFilter": "weekdays"},
    ])
    def test_invalid_rules_rejected(self, data):
        with pytest.raises(RuleInvalid):
            RecurrenceRule.from_dict(data)

    def test_non_dict_rejected(self):
        with pytest.raises(RuleInvalid):
            RecurrenceRule.from_dict(["daily"])


class TestCalendarHelpers:
    def test_civil_weekday_counts_from_sunday(self):
        assert civil_weekday(datetime(2026, 10, 18).date()) == SUNDAY
        assert civil_weekday(datetime(2026, 10, 19).date()) == MONDAY
        assert civil_weekday(datetime(2026, 10, 24).date()) == SATURDAY

    def test_nth_weekday_of_month(self):
        assert nth_weekday_of_month(2026, 11, MONDAY, 5).day == 30
        assert nth_weekday_of_month(2026, 10, MONDAY, 5) is None
        assert nth_weekday_of_month(2026, 11, SUNDAY, 1).day == 1

