"""
Monthly notification counter reset.

The billing day is the day-of-month of ``subscription_started_at``. Each month
the boundary falls at 00:00 UTC on that day (clamped to the month's last day,
so a subscription started on the 31st resets on Feb 28/29).

A reset is due once ``now`` has passed the first boundary after the last reset
(or after the subscription start if the counter was never reset). Counting
boundaries instead of matching today's day-of-month means a day on which
nobody opened the dashboard does not skip the reset for a whole cycle.
"""
import logging
from datetime import datetime, time, timezone

from app.core.dates import clamped_day, parse_timestamp, shift_month, utcnow
from app.repositories.restaurant import RestaurantRepository

logger = logging.getLogger(__name__)


def _boundary(anchor_day: int, year: int, month: int) -> datetime:
    return datetime.combine(clamped_day(year, month, anchor_day), time.min, tzinfo=timezone.utc)


def next_reset_date(anchor: datetime, now: datetime) -> datetime:
    """First reset boundary strictly after ``now``.

    Args:
        anchor: subscription_started_at
        now: reference instant

    Returns:
        The boundary in the current month if it is still ahead, else next month's.
    """
    candidate = _boundary(anchor.day, now.year, now.month)
    if candidate > now:
        return candidate
    year, month = shift_month(now.year, now.month, 1)
    return _boundary(anchor.day, year, month)


def reset_due(restaurant: dict, now: datetime | None = None) -> bool:
    """Whether a billing-day boundary has passed since the last reset."""
    anchor = parse_timestamp(restaurant.get("subscription_started_at"))
    if not anchor:
        return False
    now = now or utcnow()
    last_reset = parse_timestamp(restaurant.get("last_notification_reset")) or anchor
    return now >= next_reset_date(anchor, last_reset)


def get_next_reset_date(restaurant: dict, now: datetime | None = None) -> datetime:
    """When the notification counter next resets.

    Without a subscription start the counter follows calendar months.
    """
    now = now or utcnow()
    anchor = parse_timestamp(restaurant.get("subscription_started_at"))
    if not anchor:
        year, month = shift_month(now.year, now.month, 1)
        return _boundary(1, year, month)
    return next_reset_date(anchor, now)


def check_monthly_reset(restaurant: dict, now: datetime | None = None) -> bool:
    """Zero the monthly notification counter if a reset is due.

    Safe to call on every page load: the database update is a compare-and-set
    on ``last_notification_reset``, so concurrent callers reset at most once.
    The restaurant dict is updated in place when a reset happens.

    Returns:
        True if this call performed the reset.
    """
    now = now or utcnow()
    if not reset_due(restaurant, now):
        return False

    expected = restaurant.get("last_notification_reset")
    now_iso = now.isoformat()
    did_reset = RestaurantRepository.reset_notification_counter(restaurant["id"], expected, now_iso)
    if did_reset:
        restaurant["notifications_sent_this_month"] = 0
        restaurant["last_notification_reset"] = now_iso
        logger.info(f"Monthly notification counter reset for restaurant {restaurant['id']}")
    else:
        logger.info(f"Monthly reset for restaurant {restaurant['id']} already done by another request")
    return did_reset
