from __future__ import annotations

import calendar
from datetime import datetime
from typing import Optional, Tuple

from FinalRound.database.models.billing import Subscription
from FinalRound.schemas.billing import SubscriptionStatus
from FinalRound.utils.time import utcnow


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _midnight(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def calendar_month(now: datetime) -> Tuple[datetime, datetime]:
    start = _midnight(now.replace(day=1))
    return start, add_months(start, 1)


def billing_period_for(
    subscription: Optional[Subscription],
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """
    Current quota period (UTC, naive) for a user's subscription.

    - active with a future next_billing_time: the month ending at that day
    - active without one: the monthly cycle anchored on the record's creation day
    - otherwise: the calendar month
    """
    now = now or utcnow()
    if (
        subscription is None
        or not subscription.processor_subscription_id
        or subscription.status != SubscriptionStatus.ACTIVE.value
    ):
        return calendar_month(now)

    if subscription.next_billing_time is not None:
        period_end = _midnight(subscription.next_billing_time)
        if period_end > now:
            return add_months(period_end, -1), period_end

    if subscription.created_at is not None:
        anchor_day = subscription.created_at.day
        this_month = now.replace(day=1)
        start_day = min(anchor_day, calendar.monthrange(now.year, now.month)[1])
        period_start = _midnight(this_month.replace(day=start_day))
        if now < period_start:
            prev = add_months(this_month, -1)
            start_day = min(anchor_day, calendar.monthrange(prev.year, prev.month)[1])
            period_start = _midnight(prev.replace(day=start_day))
        return period_start, add_months(period_start, 1)

    return calendar_month(now)
