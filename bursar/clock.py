"""Wall-clock helpers: UTC timestamps and the school's local calendar date."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from bursar.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def school_today() -> date:
    """Today's date in the school's timezone (due dates are local dates)."""
    return datetime.now(ZoneInfo(settings.school_timezone)).date()
