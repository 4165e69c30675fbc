"""
Recurrence Calculator
=====================

Computes the next occurrence of a recurring reminder. Pure: it never mutates
the reminder it is given; the sweep decides whether to spawn a successor.

Arithmetic happens on wall-clock time in the reminder's timezone and is
converted back to UTC, so a 09:00 daily reminder keeps firing at 09:00 local
time across DST transitions.

Rules:
    daily    -- +interval calendar days
    weekly   -- +interval weeks, or the next listed weekday (days_of_week,
                0 = Sunday) inside the current week, else the first listed
                weekday `interval` weeks later
    monthly  -- +interval calendar months, day clamped to the month length;
                day_of_month pins the day
    yearly   -- +interval years, Feb 29 clamps to Feb 28
    custom   -- delegated to a caller-supplied evaluator, None without one
"""

import calendar
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

import pytz

from tickler.db.models.reminder import RepeatFrequency, Reminder, ensure_utc

logger = logging.getLogger(__name__)

CustomEvaluator = Callable[[Reminder], Optional[datetime]]


# =============================================================================
# Calendar helpers
# =============================================================================

def _to_sunday_first(weekday: int) -> int:
    """Convert Python's Monday=0 weekday to Sunday=0."""
    return (weekday + 1) % 7


def add_months(value: datetime, months: int, day: Optional[int] = None) -> datetime:
    """
    Add calendar months to a naive datetime, clamping the day to the length
    of the target month.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    target_day = min(day or value.day, last_day)
    return value.replace(year=year, month=month, day=target_day)


def _next_weekly(local: datetime, interval: int, days_of_week: list) -> datetime:
    if not days_of_week:
        return local + timedelta(weeks=interval)

    current = _to_sunday_first(local.weekday())
    later_this_week = [d for d in days_of_week if d > current]
    if later_this_week:
        return local + timedelta(days=later_this_week[0] - current)

    # Jump to the start (Sunday) of the week `interval` weeks ahead
    week_start = local - timedelta(days=current)
    return week_start + timedelta(weeks=interval, days=days_of_week[0])


def _resolve_timezone(name: str):
    try:
        return pytz.timezone(name or "UTC")
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone '{name}', falling back to UTC for recurrence")
        return pytz.UTC


# =============================================================================
# Calculator
# =============================================================================

def candidate_after(reminder: Reminder) -> Optional[datetime]:
    """
    Candidate next time for a built-in frequency, ignoring the series bounds.

    Returns None for `custom`, which has no built-in expansion.
    """
    rule = reminder.repeat_rule
    if rule is None:
        return None

    tz = _resolve_timezone(reminder.timezone)
    local = reminder.scheduled_at.astimezone(tz).replace(tzinfo=None)

    if rule.frequency == RepeatFrequency.DAILY:
        naive_next = local + timedelta(days=rule.interval)
    elif rule.frequency == RepeatFrequency.WEEKLY:
        naive_next = _next_weekly(local, rule.interval, rule.days_of_week)
    elif rule.frequency == RepeatFrequency.MONTHLY:
        naive_next = add_months(local, rule.interval, rule.day_of_month)
    elif rule.frequency == RepeatFrequency.YEARLY:
        naive_next = add_months(local, 12 * rule.interval)
    else:
        return None

    candidate = tz.normalize(tz.localize(naive_next)).astimezone(pytz.UTC)

    # A DST gap can pull the localized time back; never return a non-advancing time
    if candidate <= reminder.scheduled_at:
        candidate = reminder.scheduled_at + (naive_next - local)
    return candidate


def next_occurrence(
    reminder: Reminder,
    custom_evaluator: Optional[CustomEvaluator] = None,
) -> Optional[datetime]:
    """
    Next scheduled time for a recurring reminder, or None when the series ends.

    Args:
        reminder: The current occurrence (its repeat_rule must be enabled)
        custom_evaluator: Expansion for `custom` frequency rules

    Returns:
        Aware UTC datetime strictly after reminder.scheduled_at, or None
    """
    rule = reminder.repeat_rule
    if rule is None or not rule.enabled:
        return None

    if rule.max_occurrences is not None and reminder.trigger_count >= rule.max_occurrences:
        return None

    if rule.frequency == RepeatFrequency.CUSTOM:
        if custom_evaluator is None:
            logger.warning(
                f"Reminder {reminder.id} uses custom recurrence but no evaluator "
                f"is configured; ending series"
            )
            return None
        candidate = ensure_utc(custom_evaluator(reminder))
        if candidate is None or candidate <= reminder.scheduled_at:
            return None
    else:
        candidate = candidate_after(reminder)
        if candidate is None:
            return None

    if rule.end_date is not None and candidate > rule.end_date:
        return None

    return candidate
