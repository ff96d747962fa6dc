"""
Recurrence rules and the resolver that turns them into trigger instants.

Rule hour/minute are local civil time in the zone carried by the reminder
record. Weekday numbers follow the stored schedule format: 0 = Sunday.
"""
import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from dateutil.relativedelta import relativedelta

from bell_dispatch.utils.timezone import from_local_naive, to_local_naive, to_utc_aware
from .exceptions import RuleInvalid

logger = logging.getLogger(__name__)


class ScheduleType(Enum):
    """Types of recurrence patterns"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    INTERVAL = "interval"
    SPECIFIC_DAYS = "specific_days"


class DateFilter(Enum):
    """Weekday filter applied to candidate dates"""
    ALL = "all"
    WEEKDAYS = "weekdays"
    WEEKENDS = "weekends"


# Days of the week, stored-schedule numbering
SUNDAY, MONDAY, TUESDAY, WEDNESDAY, THURSDAY, FRIDAY, SATURDAY = range(7)
WEEKEND_DAYS = frozenset({SUNDAY, SATURDAY})
ALL_DAYS = frozenset(range(7))


def civil_weekday(day: date) -> int:
    """Weekday of `day` with 0 = Sunday."""
    return (day.weekday() + 1) % 7


def _filter_days(date_filter: DateFilter) -> FrozenSet[int]:
    if date_filter == DateFilter.WEEKDAYS:
        return ALL_DAYS - WEEKEND_DAYS
    if date_filter == DateFilter.WEEKENDS:
        return WEEKEND_DAYS
    return ALL_DAYS


def _as_int(data: Dict[str, Any], name: str, low: int, high: Optional[int] = None) -> int:
    value = data.get(name)
    # bool is an int subclass; JSON true must not pass as 1
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RuleInvalid(f"{name} must be a number, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise RuleInvalid(f"{name} must be a whole number, got {value!r}")
        value = int(value)
    if value < low or (high is not None and value > high):
        bound = f"{low}-{high}" if high is not None else f">= {low}"
        raise RuleInvalid(f"{name} must be {bound}, got {value}")
    return value


@dataclass(frozen=True)
class RecurrenceRule:
    """Declarative description of when a reminder fires next"""
    type: ScheduleType
    hour: int
    minute: int
    interval: int = 1
    date_filter: DateFilter = DateFilter.ALL
    day_of_week: Optional[int] = None
    week_of_month: Optional[int] = None
    selected_days: FrozenSet[int] = field(default_factory=frozenset)

    def allows(self, day: date) -> bool:
        """True when `day` passes the date filter (and the day set, if any)."""
        weekday = civil_weekday(day)
        if self.type == ScheduleType.SPECIFIC_DAYS and weekday not in self.selected_days:
            return False
        return weekday in _filter_days(self.date_filter)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type.value,
            "interval": self.interval,
            "hour": self.hour,
            "minute": self.minute,
            "dateFilter": self.date_filter.value,
        }
        if self.day_of_week is not None:
            data["dayOfWeek"] = self.day_of_week
        if self.week_of_month is not None:
            data["weekOfMonth"] = self.week_of_month
        if self.selected_days:
            data["selectedDays"] = sorted(self.selected_days)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurrenceRule":
        """Parse a stored schedule; raises RuleInvalid on any structural problem."""
        if not isinstance(data, dict):
            raise RuleInvalid(f"schedule must be an object, got {type(data).__name__}")

        # Accept 'kind' as an alias for 'type'
        raw_type = data.get("type", data.get("kind"))
        try:
            schedule_type = ScheduleType(raw_type)
        except ValueError:
            raise RuleInvalid(f"unknown schedule type {raw_type!r}") from None

        raw_filter = data.get("dateFilter")
        try:
            date_filter = DateFilter(raw_filter) if raw_filter is not None else DateFilter.ALL
        except ValueError:
            raise RuleInvalid(f"unknown dateFilter {raw_filter!r}") from None

        interval = _as_int(data, "interval", 1) if data.get("interval") is not None else 1
        hour = _as_int(data, "hour", 0, 23)
        minute = _as_int(data, "minute", 0, 59)

        day_of_week = None
        if data.get("dayOfWeek") is not None:
            day_of_week = _as_int(data, "dayOfWeek", 0, 6)
        week_of_month = None
        if data.get("weekOfMonth") is not None:
            week_of_month = _as_int(data, "weekOfMonth", 1, 5)

        selected_days: FrozenSet[int] = frozenset()
        raw_days = data.get("selectedDays")
        if raw_days is not None:
            if not isinstance(raw_days, (list, tuple, set, frozenset)):
                raise RuleInvalid("selectedDays must be a list of weekday numbers")
            selected_days = frozenset(
                _as_int({"selectedDays": d}, "selectedDays", 0, 6) for d in raw_days
            )

        if schedule_type in (ScheduleType.WEEKLY, ScheduleType.MONTHLY) and day_of_week is None:
            raise RuleInvalid(f"{schedule_type.value} schedules require dayOfWeek")
        if schedule_type == ScheduleType.MONTHLY and week_of_month is None:
            raise RuleInvalid("monthly schedules require weekOfMonth")
        if schedule_type == ScheduleType.SPECIFIC_DAYS and not selected_days:
            raise RuleInvalid("specific_days schedules require a non-empty selectedDays")

        if schedule_type == ScheduleType.INTERVAL:
            # Interval rules step a fixed number of days; a weekday filter does not apply
            date_filter = DateFilter.ALL

        allowed = _filter_days(date_filter)
        if day_of_week is not None and schedule_type in (ScheduleType.WEEKLY, ScheduleType.MONTHLY):
            if day_of_week not in allowed:
                raise RuleInvalid(
                    f"dateFilter {date_filter.value} never matches dayOfWeek {day_of_week}"
                )
        if schedule_type == ScheduleType.SPECIFIC_DAYS and not (selected_days & allowed):
            raise RuleInvalid(f"dateFilter {date_filter.value} excludes every selected day")

        return cls(
            type=schedule_type,
            hour=hour,
            minute=minute,
            interval=interval,
            date_filter=date_filter,
            day_of_week=day_of_week,
            week_of_month=week_of_month,
            selected_days=selected_days,
        )


def nth_weekday_of_month(year: int, month: int, weekday: int, nth: int) -> Optional[date]:
    """The `nth` occurrence of `weekday` (0 = Sunday) in a month, or None."""
    first_weekday, days_in_month = calendar.monthrange(year, month)
    first_civil = (first_weekday + 1) % 7
    day = 1 + (weekday - first_civil) % 7 + (nth - 1) * 7
    if day > days_in_month:
        return None
    return date(year, month, day)


class RecurrenceCalculator:
    """Calculates the next trigger instant for a recurrence rule"""

    DAY_FILTER_ATTEMPTS = 14
    SELECTED_DAY_ATTEMPTS = 7
    # Reference month plus twelve more: the thirteen-month global ceiling
    MONTHLY_LOOKAHEAD_MONTHS = 12
    MAX_SEARCH_ITERATIONS = 400

    @staticmethod
    def calculate_next_occurrence(
        rule: RecurrenceRule,
        tz: tzinfo,
        reference: datetime,
    ) -> Optional[datetime]:
        """
        Next trigger instant strictly after `reference`, as a UTC-aware datetime.

        Returns None (unschedulable) when no occurrence exists within the
        search bounds.
        """
        reference = to_utc_aware(reference)
        local_ref = to_local_naive(reference, tz)

        for _ in range(RecurrenceCalculator.MAX_SEARCH_ITERATIONS):
            candidate = RecurrenceCalculator._next_local(rule, local_ref)
            if candidate is None:
                return None
            if not rule.allows(candidate.date()) and rule.type != ScheduleType.INTERVAL:
                local_ref = candidate
                continue
            result = from_local_naive(candidate, tz)
            # Wall-clock order can disagree with instant order around DST folds
            if result > reference:
                return result
            local_ref = candidate

        logger.error(
            "[Recurrence] search ceiling reached for %s from %s", rule.to_dict(), reference.isoformat()
        )
        return None

    @staticmethod
    def calculate_next_after(
        rule: RecurrenceRule,
        tz: tzinfo,
        reference: datetime,
        now: datetime,
        max_steps: int = 1000,
    ) -> Optional[datetime]:
        """
        First occurrence strictly after `now`, stepping forward from `reference`.

        Missed occurrences between `reference` and `now` are skipped. If more
        than `max_steps` are missed, resolution restarts from `now`.
        """
        now = to_utc_aware(now)
        next_at = RecurrenceCalculator.calculate_next_occurrence(rule, tz, reference)
        steps = 0
        while next_at is not None and next_at <= now:
            steps += 1
            if steps >= max_steps:
                logger.warning(
                    "[Recurrence] more than %d missed occurrences since %s; resolving from now",
                    max_steps, to_utc_aware(reference).isoformat(),
                )
                return RecurrenceCalculator.calculate_next_occurrence(rule, tz, now)
            next_at = RecurrenceCalculator.calculate_next_occurrence(rule, tz, next_at)
        return next_at

    @staticmethod
    def _next_local(rule: RecurrenceRule, local_ref: datetime) -> Optional[datetime]:
        if rule.type == ScheduleType.DAILY:
            return RecurrenceCalculator._calculate_daily_next(rule, local_ref)
        if rule.type == ScheduleType.INTERVAL:
            return RecurrenceCalculator._calculate_interval_next(rule, local_ref)
        if rule.type == ScheduleType.WEEKLY:
            return RecurrenceCalculator._calculate_weekly_next(rule, local_ref)
        if rule.type == ScheduleType.SPECIFIC_DAYS:
            return RecurrenceCalculator._calculate_specific_days_next(rule, local_ref)
        return RecurrenceCalculator._calculate_monthly_next(rule, local_ref)

    @staticmethod
    def _at_rule_time(day: date, rule: RecurrenceRule) -> datetime:
        return datetime.combine(day, time(rule.hour, rule.minute))

    @staticmethod
    def _calculate_daily_next(rule: RecurrenceRule, local_ref: datetime) -> Optional[datetime]:
        candidate = RecurrenceCalculator._at_rule_time(local_ref.date(), rule)
        if candidate <= local_ref:
            candidate += timedelta(days=rule.interval)

        for _ in range(RecurrenceCalculator.DAY_FILTER_ATTEMPTS):
            if rule.allows(candidate.date()):
                return candidate
            candidate += timedelta(days=1)

        # Any weekday/weekend filter recurs within a week, so this is a logic error
        logger.error(
            "[Recurrence] daily filter %s unmatched after %d days from %s",
            rule.date_filter.value,
            RecurrenceCalculator.DAY_FILTER_ATTEMPTS,
            local_ref.isoformat(),
        )
        return None

    @staticmethod
    def _calculate_interval_next(rule: RecurrenceRule, local_ref: datetime) -> datetime:
        candidate = RecurrenceCalculator._at_rule_time(local_ref.date(), rule)
        if candidate <= local_ref:
            candidate += timedelta(days=rule.interval)
        return candidate

    @staticmethod
    def _calculate_weekly_next(rule: RecurrenceRule, local_ref: datetime) -> datetime:
        offset = (rule.day_of_week - civil_weekday(local_ref.date())) % 7
        candidate = RecurrenceCalculator._at_rule_time(local_ref.date() + timedelta(days=offset), rule)
        if candidate <= local_ref:
            # Same weekday, time already passed
            candidate += timedelta(weeks=rule.interval)
        return candidate

    @staticmethod
    def _calculate_specific_days_next(rule: RecurrenceRule, local_ref: datetime) -> datetime:
        for day_offset in range(RecurrenceCalculator.SELECTED_DAY_ATTEMPTS):
            day = local_ref.date() + timedelta(days=day_offset)
            if civil_weekday(day) in rule.selected_days:
                candidate = RecurrenceCalculator._at_rule_time(day, rule)
                if candidate > local_ref:
                    return candidate

        # Wrap to the earliest selected weekday of the following week
        week_start = local_ref.date() + timedelta(days=RecurrenceCalculator.SELECTED_DAY_ATTEMPTS)
        start_weekday = civil_weekday(week_start)
        earliest = min((d - start_weekday) % 7 for d in rule.selected_days)
        return RecurrenceCalculator._at_rule_time(week_start + timedelta(days=earliest), rule)

    @staticmethod
    def _calculate_monthly_next(rule: RecurrenceRule, local_ref: datetime) -> Optional[datetime]:
        month_start = local_ref.date().replace(day=1)
        for month_offset in range(RecurrenceCalculator.MONTHLY_LOOKAHEAD_MONTHS + 1):
            month = month_start + relativedelta(months=month_offset)
            day = nth_weekday_of_month(month.year, month.month, rule.day_of_week, rule.week_of_month)
            if day is None:
                continue
            candidate = RecurrenceCalculator._at_rule_time(day, rule)
            if candidate > local_ref:
                return candidate

        logger.warning(
            "[Recurrence] no week %d occurrence of weekday %d within %d months of %s",
            rule.week_of_month,
            rule.day_of_week,
            RecurrenceCalculator.MONTHLY_LOOKAHEAD_MONTHS + 1,
            local_ref.isoformat(),
        )
        return None
