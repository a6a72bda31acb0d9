"""
Billing period calculator.

Periods are UTC calendar months: [first ms of this month, first ms of next
month). UTC avoids host timezone and DST dependence.
"""

import math
from datetime import datetime, timezone
from typing import Optional

from vanda.models.subscription import BillingPeriod

MS_PER_DAY = 24 * 60 * 60 * 1000


def utc_now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, timezone.utc)


def compute_billing_period(now_ms: Optional[int] = None) -> BillingPeriod:
    """Return the monthly window containing now_ms (start <= now < end)."""
    if now_ms is None:
        now_ms = utc_now_ms()
    now = from_ms(now_ms)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return BillingPeriod(start=to_ms(start), end=to_ms(end))


def days_until(end_ms: int, now_ms: int) -> int:
    """Whole days (rounded up) until end_ms, never negative."""
    return max(0, math.ceil((end_ms - now_ms) / MS_PER_DAY))
