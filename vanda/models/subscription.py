"""
vanda/models/subscription.py

Subscription record, quota views and the typed mutation payloads applied to
the user_subscriptions table.

All timestamps are epoch milliseconds (UTC).
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


class BillingPeriod(BaseModel):
    """Half-open monthly window [start, end)."""
    model_config = ConfigDict(frozen=True)

    start: int
    end: int

    @model_validator(mode="after")
    def _check_order(self):
        if self.end <= self.start:
            raise ValueError("period end must be after period start")
        return self

    def contains(self, now_ms: int) -> bool:
        return self.start <= now_ms < self.end


class Subscription(BaseModel):
    """
    One live record per user.

    Invariant: 0 <= prompts_used, and prompts_used <= prompts_limit after
    every successful consume. A plan downgrade may leave used above limit;
    remaining is then reported as 0.
    """
    model_config = ConfigDict(frozen=True)

    subscription_id: int
    user_id: str
    plan: str
    prompts_limit: int
    prompts_used: int = Field(ge=0)
    period_start: int
    period_end: int
    created_at: int
    external_billing_id: Optional[str] = None
    subscription_source: str = "manual"

    @property
    def remaining(self) -> int:
        return max(0, self.prompts_limit - self.prompts_used)

    def is_stale(self, now_ms: int) -> bool:
        """A record whose period has elapsed must roll over before any consume."""
        return now_ms >= self.period_end


class QuotaStatus(BaseModel):
    """Read-side quota view returned by check_quota."""
    model_config = ConfigDict(frozen=True)

    has_quota: bool
    remaining: int
    limit: int
    used: int
    plan: str
    period_end: int


class ConsumeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    remaining: int


class UsageStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan: str
    plan_name: str
    prompts_used: int
    prompts_limit: int
    percent_used: int
    days_until_reset: int


# Mutation payloads: each operation writes exactly these columns.

class RolloverUpdate(BaseModel):
    """Reset usage and advance the period together."""
    model_config = ConfigDict(frozen=True)

    prompts_used: int = 0
    period_start: int
    period_end: int

    @classmethod
    def for_period(cls, period: BillingPeriod) -> "RolloverUpdate":
        return cls(period_start=period.start, period_end=period.end)


class ConsumeUpdate(BaseModel):
    """Increment prompts_used by count, guarded by the limit."""
    model_config = ConfigDict(frozen=True)

    count: int = Field(ge=1)


class PlanChangeUpdate(BaseModel):
    """Apply a catalog plan. Usage and period are left untouched."""
    model_config = ConfigDict(frozen=True)

    plan: str
    prompts_limit: int = Field(ge=0)
    subscription_source: str
    external_billing_id: Optional[str] = None
