"""
Trigger calculation for weekly booking rules.

The platform opens a date for booking a fixed number of days in advance. For
a rule that targets a weekday, this module works out which target date the
next attempt is for, on which day that attempt happens, and which attempts
are due at a given moment. Everything here is pure: callers pass "now" in
the configured timezone and the advance window.
"""

from datetime import date, datetime, timedelta

from slotbooker.models.schemas import BookingRule, Schedule


def day_of_week(day: date) -> int:
    """Weekday with 0 = Sunday ... 6 = Saturday, as stored on rules."""
    return (day.weekday() + 1) % 7


def next_weekday_on_or_after(day: date, weekday: int) -> date:
    return day + timedelta(days=(weekday - day_of_week(day)) % 7)


def compute_schedule(rule: BookingRule, now: datetime, advance_days: int) -> Schedule:
    """
    Compute the next target date and attempt date for a rule.

    The target is the first date with the rule's weekday that can still be
    attempted: its attempt date (target minus the advance window) is today or
    later. When the advance window is zero and the target is today, today
    only counts while the target time has not passed yet.

    Args:
        rule: The rule to schedule.
        now: Current wall-clock time in the configured timezone.
        advance_days: How many days ahead the platform opens bookings.

    Returns:
        Schedule with target_date, attempt_date and days_until_attempt.
    """
    today = now.date()
    target_date = next_weekday_on_or_after(today + timedelta(days=advance_days), rule.day_of_week)
    if target_date == today and now.time().replace(tzinfo=None) >= rule.target_time:
        target_date += timedelta(days=7)

    attempt_date = target_date - timedelta(days=advance_days)
    return Schedule(
        target_date=target_date,
        attempt_date=attempt_date,
        days_until_attempt=max(0, (attempt_date - today).days),
    )


def due_target_dates(
    rule: BookingRule,
    now: datetime,
    advance_days: int,
    catch_up_days: int = 6,
) -> list[date]:
    """
    List the target dates whose attempt is due at `now`, oldest first.

    An attempt is due on its attempt date once the trigger time has been
    reached, and stays due on later days so a run missed during downtime is
    still made. Looking back `catch_up_days` bounds how old a missed attempt
    can be. Whether a due attempt was already made is not decided here: the
    caller checks the attempt log.
    """
    today = now.date()
    current_time = now.time().replace(tzinfo=None)
    due: list[date] = []

    for days_ago in range(catch_up_days, -1, -1):
        attempt_date = today - timedelta(days=days_ago)
        target_date = attempt_date + timedelta(days=advance_days)
        if day_of_week(target_date) != rule.day_of_week:
            continue
        if days_ago == 0 and current_time < rule.trigger_time:
            continue
        if target_date < today or (target_date == today and current_time >= rule.target_time):
            continue
        due.append(target_date)

    return due


def attempt_opens_at(rule: BookingRule, target_date: date, advance_days: int, tz) -> datetime:
    """Aware instant at which the attempt for `target_date` becomes due."""
    attempt_date = target_date - timedelta(days=advance_days)
    return tz.localize(datetime.combine(attempt_date, rule.trigger_time))
