"""Date helpers for billing-cycle arithmetic. All datetimes are UTC-aware."""
import calendar
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> datetime | None:
    """Parse a Supabase/ISO timestamp (or pass a datetime through) as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_unix(seconds: int | None) -> datetime | None:
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def clamped_day(year: int, month: int, day: int) -> date:
    """``day`` in the given month, clamped to the month's last day (31 -> Feb 28)."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def add_months(value: datetime, months: int) -> datetime:
    """Same day-of-month ``months`` later, clamped, keeping the time of day."""
    year, month = shift_month(value.year, value.month, months)
    target = clamped_day(year, month, value.day)
    return value.replace(year=target.year, month=target.month, day=target.day)
