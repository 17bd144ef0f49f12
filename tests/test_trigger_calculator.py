"""
Tests for schedule computation in slotbooker/services/trigger_calculator.py.
"""

from datetime import date, datetime, time, timedelta

import pytest
import pytz

from slotbooker.models.schemas import BookingRule
from slotbooker.services.trigger_calculator import (
    attempt_opens_at,
    compute_schedule,
    day_of_week,
    due_target_dates,
    next_weekday_on_or_after,
)

PARIS = pytz.timezone("Europe/Paris")


def paris(*args: int) -> datetime:
    return PARIS.localize(datetime(*args))


def make_rule(day: int = 1, target: time = time(19, 0), trigger: time = time(0, 0)) -> BookingRule:
    return BookingRule(id=5, day_of_week=day, target_time=target, trigger_time=trigger)


class TestDayOfWeek:
    def test_sunday_is_zero(self) -> None:
        assert day_of_week(date(2025, 3, 16)) == 0

    def test_monday_is_one(self) -> None:
        assert day_of_week(date(2025, 3, 17)) == 1

    def test_saturday_is_six(self) -> None:
        assert day_of_week(date(2025, 3, 22)) == 6

    def test_next_weekday_on_or_after_same_day(self) -> None:
        assert next_weekday_on_or_after(date(2025, 3, 17), 1) == date(2025, 3, 17)

    def test_next_weekday_on_or_after_wraps(self) -> None:
        assert next_weekday_on_or_after(date(2025, 3, 18), 1) == date(2025, 3, 24)


class TestComputeSchedule:
    def test_monday_evening_scenario(self) -> None:
        """A Monday 18:59 with a 45-day window targets the Monday 45+ days out."""
        now = paris(2025, 3, 17, 18, 59)

        schedule = compute_schedule(make_rule(day=1), now, advance_days=45)

        assert schedule.target_date == date(2025, 5, 5)
        assert day_of_week(schedule.target_date) == 1
        assert schedule.attempt_date == schedule.target_date - timedelta(days=45)
        assert schedule.attempt_date == date(2025, 3, 21)
        assert schedule.days_until_attempt == 4

    def test_attempt_today_when_target_lands_exactly(self) -> None:
        # 2025-03-21 + 45 days = 2025-05-05, a Monday
        now = paris(2025, 3, 21, 8, 0)

        schedule = compute_schedule(make_rule(day=1), now, advance_days=45)

        assert schedule.target_date == date(2025, 5, 5)
        assert schedule.attempt_date == date(2025, 3, 21)
        assert schedule.days_until_attempt == 0

    def test_zero_advance_today_before_target_time(self) -> None:
        now = paris(2025, 3, 17, 18, 59)

        schedule = compute_schedule(make_rule(day=1), now, advance_days=0)

        assert schedule.target_date == date(2025, 3, 17)
        assert schedule.attempt_date == date(2025, 3, 17)

    def test_zero_advance_today_after_target_time_rolls_a_week(self) -> None:
        now = paris(2025, 3, 17, 19, 0)

        schedule = compute_schedule(make_rule(day=1), now, advance_days=0)

        assert schedule.target_date == date(2025, 3, 24)
        assert schedule.days_until_attempt == 7

    @pytest.mark.parametrize("advance_days", [0, 1, 7, 30, 45])
    @pytest.mark.parametrize("rule_day", range(7))
    def test_target_weekday_always_matches_rule(self, rule_day: int, advance_days: int) -> None:
        rule = make_rule(day=rule_day)
        start = paris(2025, 3, 10, 0, 0)

        for hours in range(0, 14 * 24, 5):
            schedule = compute_schedule(rule, start + timedelta(hours=hours), advance_days)
            assert day_of_week(schedule.target_date) == rule_day
            assert schedule.days_until_attempt >= 0


class TestDueTargetDates:
    def test_due_on_attempt_date_after_trigger(self) -> None:
        rule = make_rule(day=1, trigger=time(7, 0))

        assert due_target_dates(rule, paris(2025, 3, 21, 7, 0), advance_days=45) == [
            date(2025, 5, 5)
        ]

    def test_not_due_before_trigger_time(self) -> None:
        rule = make_rule(day=1, trigger=time(7, 0))

        assert due_target_dates(rule, paris(2025, 3, 21, 6, 59), advance_days=45) == []

    def test_not_due_on_other_days(self) -> None:
        rule = make_rule(day=1)

        due = due_target_dates(rule, paris(2025, 3, 20, 12, 0), advance_days=45, catch_up_days=0)

        assert due == []

    def test_missed_attempt_three_days_ago_is_still_due(self) -> None:
        rule = make_rule(day=1, trigger=time(7, 0))

        # Attempt date was 2025-03-21; the server came back on 2025-03-24 at 06:00.
        due = due_target_dates(rule, paris(2025, 3, 24, 6, 0), advance_days=45)

        assert due == [date(2025, 5, 5)]

    def test_catch_up_window_is_bounded(self) -> None:
        rule = make_rule(day=1)

        due = due_target_dates(rule, paris(2025, 3, 24, 6, 0), advance_days=45, catch_up_days=2)

        assert due == []

    def test_past_target_is_never_due(self) -> None:
        rule = make_rule(day=1, target=time(19, 0))

        # With a 2-day window, the 2025-03-17 target was attempted on 03-15;
        # on 03-18 it is in the past.
        due = due_target_dates(rule, paris(2025, 3, 18, 9, 0), advance_days=2)

        assert date(2025, 3, 17) not in due

    def test_due_dates_are_oldest_first(self) -> None:
        rule = make_rule(day=1)

        due = due_target_dates(rule, paris(2025, 3, 24, 12, 0), advance_days=45, catch_up_days=13)

        assert due == [date(2025, 4, 28), date(2025, 5, 5)]


class TestAttemptOpensAt:
    def test_trigger_time_on_attempt_date(self) -> None:
        rule = make_rule(day=1, trigger=time(7, 0))

        opens_at = attempt_opens_at(rule, date(2025, 5, 5), advance_days=45, tz=PARIS)

        assert opens_at == paris(2025, 3, 21, 7, 0)
        assert opens_at.astimezone(pytz.utc).hour == 6
