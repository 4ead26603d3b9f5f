"""
Cron schedules for sync jobs.

Expressions are standard five-field cron (minute hour day-of-month month
day-of-week), parsed with Celery's crontab parser and evaluated in UTC.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from datetime import timezone as dt_timezone

from celery.schedules import ParseException, crontab

from relay.exceptions import InvalidRequestError

# Give up looking for an occurrence after this long (e.g. "0 0 30 2 *")
SEARCH_HORIZON = timedelta(days=366 * 5)


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    minutes: frozenset
    hours: frozenset
    days_of_month: frozenset
    months: frozenset
    days_of_week: frozenset
    dom_restricted: bool
    dow_restricted: bool

    def day_matches(self, moment: datetime) -> bool:
        # cron counts Sunday as 0
        dom = moment.day in self.days_of_month
        dow = (moment.weekday() + 1) % 7 in self.days_of_week
        if self.dom_restricted and self.dow_restricted:
            return dom or dow
        if self.dom_restricted:
            return dom
        if self.dow_restricted:
            return dow
        return True


def parse_schedule(expression: str) -> CronSchedule:
    """
    Parse a five-field cron expression.

    Raises:
        InvalidRequestError: If the expression is malformed
    """
    fields = (expression or "").split()
    if len(fields) != 5:
        raise InvalidRequestError(
            f"Invalid schedule '{expression}': expected 5 cron fields, got {len(fields)}"
        )
    minute, hour, day_of_month, month_of_year, day_of_week = fields

    try:
        parsed = crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
        )
    except (ParseException, ValueError) as e:
        raise InvalidRequestError(f"Invalid schedule '{expression}': {e}") from e

    return CronSchedule(
        expression=" ".join(fields),
        minutes=frozenset(parsed.minute),
        hours=frozenset(parsed.hour),
        days_of_month=frozenset(parsed.day_of_month),
        months=frozenset(parsed.month_of_year),
        days_of_week=frozenset(parsed.day_of_week),
        dom_restricted=day_of_month != "*",
        dow_restricted=day_of_week != "*",
    )


def next_run_after(expression: str | CronSchedule, after: datetime) -> datetime:
    """
    Return the first time strictly after ``after`` that matches the schedule.

    Raises:
        InvalidRequestError: If the expression is invalid or never fires
    """
    schedule = expression if isinstance(expression, CronSchedule) else parse_schedule(expression)

    if after.tzinfo is None:
        after = after.replace(tzinfo=dt_timezone.utc)
    current = after.astimezone(dt_timezone.utc).replace(second=0, microsecond=0) + timedelta(minutes=1)
    limit = current + SEARCH_HORIZON

    while current < limit:
        if current.month not in schedule.months:
            year, month = (current.year + 1, 1) if current.month == 12 else (current.year, current.month + 1)
            current = current.replace(year=year, month=month, day=1, hour=0, minute=0)
            continue
        if not schedule.day_matches(current):
            current = (current + timedelta(days=1)).replace(hour=0, minute=0)
            continue
        if current.hour not in schedule.hours:
            current = (current + timedelta(hours=1)).replace(minute=0)
            continue
        if current.minute not in schedule.minutes:
            current += timedelta(minutes=1)
            continue
        return current

    raise InvalidRequestError(f"Schedule '{schedule.expression}' never fires")
