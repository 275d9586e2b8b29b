"""Schedule strings for agent triggers, evaluated with celery's schedule types.

Accepted forms: five-field cron (``*/15 9-17 * * 1-5``), shorthands such as
``@daily``, and fixed intervals such as ``@every 1h 30m``.
"""
from celery.schedules import crontab, schedule as celery_schedule
from datetime import datetime, timedelta
from typing import Callable, Optional, Union
import re

Schedule = Union[celery_schedule, crontab]

CRON_FIELDS = ("minute", "hour", "day_of_month", "month_of_year", "day_of_week")

_INTERVAL_PART = re.compile(r"(\d+)([smhd])")
_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


class ScheduleParser:
    """Turns a trigger's schedule string into something that can say when it is due."""

    SHORTHANDS = {
        "@yearly": "0 0 1 1 *",
        "@annually": "0 0 1 1 *",
        "@monthly": "0 0 1 * *",
        "@weekly": "0 0 * * 0",
        "@daily": "0 0 * * *",
        "@midnight": "0 0 * * *",
        "@hourly": "0 * * * *",
    }

    @classmethod
    def parse(cls, value: str, nowfun: Optional[Callable[[], datetime]] = None) -> Optional[Schedule]:
        """Parse a schedule; empty means no schedule. Raises ValueError when malformed."""
        value = (value or "").strip()
        if not value:
            return None

        value = cls.SHORTHANDS.get(value, value)
        if value.startswith("@every"):
            return celery_schedule(run_every=cls._interval(value[len("@every"):]), nowfun=nowfun)
        if value.startswith("@"):
            raise ValueError(f"Unsupported schedule shorthand: {value}")

        fields = value.split()
        if len(fields) != len(CRON_FIELDS):
            raise ValueError(f"Cron schedules need {len(CRON_FIELDS)} fields ({' '.join(CRON_FIELDS)}): {value}")
        return crontab(nowfun=nowfun, **dict(zip(CRON_FIELDS, fields)))

    @classmethod
    def is_due(cls, value: str, last_run_at: datetime, now: datetime) -> bool:
        """True when a run is due at ``now`` given the previous run time"""
        parsed = cls.parse(value, nowfun=lambda: now)
        if parsed is None:
            return False
        return parsed.is_due(last_run_at).is_due

    @staticmethod
    def _interval(text: str) -> timedelta:
        total = timedelta()
        for part in text.split():
            match = _INTERVAL_PART.fullmatch(part)
            if match is None:
                raise ValueError(f"Invalid interval part: {part}")
            total += timedelta(**{_UNITS[match.group(2)]: int(match.group(1))})

        if total <= timedelta():
            raise ValueError("Interval must be positive")
        return total
