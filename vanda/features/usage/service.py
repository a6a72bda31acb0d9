"""
vanda/features/usage/service.py

Prompt quota ledger.

Handles:
- Lazy subscription creation (free plan) and monthly rollover
- Read-only quota views (predict rollover, never persist it)
- Race-safe consumption via guarded UPDATEs
- Plan changes from admins or the billing provider

Every operation takes the caller identity explicitly; None means the caller
is not signed in.

Concurrency model: the read-check-increment is a single conditional UPDATE
(``prompts_used + count <= prompts_limit``) executed inside the session's
transaction, so two concurrent consumers can never both spend the last
unit. Rollover is likewise guarded by ``period_end <= now`` so a second
concurrent rollover is a no-op against the already fresh row.
"""

from typing import Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from vanda.core.database import get_db_session, user_subscriptions
from vanda.core.errors import (
    NotAuthenticatedError,
    QuotaExceededError,
    SubscriptionNotFoundError,
    ValidationError,
)
from vanda.core.logging import log_event
from vanda.features.billing.period import compute_billing_period, days_until, utc_now_ms
from vanda.features.billing.plans import get_default_plan, require_plan, plan_display_name
from vanda.features.users.service import get_or_create_user
from vanda.models.subscription import (
    ConsumeResult,
    ConsumeUpdate,
    PlanChangeUpdate,
    QuotaStatus,
    RolloverUpdate,
    Subscription,
    UsageStats,
)


def _require_identity(user_id: Optional[str]) -> str:
    if not user_id:
        raise NotAuthenticatedError()
    return user_id


def _now(now_ms: Optional[int]) -> int:
    return utc_now_ms() if now_ms is None else now_ms


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        subscription_id=row.id,
        user_id=row.user_id,
        plan=row.plan,
        prompts_limit=row.prompts_limit,
        prompts_used=row.prompts_used,
        period_start=row.period_start,
        period_end=row.period_end,
        created_at=row.created_at,
        external_billing_id=row.external_billing_id,
        subscription_source=row.subscription_source,
    )


def _select_subscription(session, user_id: str) -> Optional[Subscription]:
    row = session.execute(
        select(user_subscriptions).where(user_subscriptions.c.user_id == user_id)
    ).first()
    return _row_to_subscription(row) if row else None


def _apply_rollover(session, subscription: Subscription, now_ms: int) -> bool:
    """Reset usage and advance the period. Returns False if another writer already did."""
    change = RolloverUpdate.for_period(compute_billing_period(now_ms))
    result = session.execute(
        update(user_subscriptions)
        .where(user_subscriptions.c.id == subscription.subscription_id)
        .where(user_subscriptions.c.period_end <= now_ms)
        .values(
            prompts_used=change.prompts_used,
            period_start=change.period_start,
            period_end=change.period_end,
        )
    )
    applied = result.rowcount > 0
    if applied:
        log_event(
            "info",
            "quota.rollover",
            user_id=subscription.user_id,
            event_type="quota.rollover",
            extra={
                "previous_used": subscription.prompts_used,
                "period_start": change.period_start,
                "period_end": change.period_end,
            },
        )
    return applied


def get_subscription(user_id: str) -> Optional[Subscription]:
    """Raw stored record (no rollover prediction)."""
    with get_db_session() as session:
        return _select_subscription(session, user_id)


def ensure_subscription(user_id: Optional[str], now_ms: Optional[int] = None) -> int:
    """
    Ensure the caller has a subscription record and that it is current.

    - No record: create one on the default (free) plan for the current period.
    - Stale record (now >= period_end): roll it over in place.
    - Current record: no-op.

    Returns:
        The subscription id (stable across calls).

    Raises:
        NotAuthenticatedError: If user_id is None
    """
    user_id = _require_identity(user_id)
    now_ms = _now(now_ms)
    get_or_create_user(user_id)

    with get_db_session() as session:
        existing = _select_subscription(session, user_id)
        if existing:
            if existing.is_stale(now_ms):
                _apply_rollover(session, existing, now_ms)
            return existing.subscription_id

    plan = get_default_plan()
    period = compute_billing_period(now_ms)
    try:
        with get_db_session() as session:
            result = session.execute(
                insert(user_subscriptions).values(
                    user_id=user_id,
                    plan=plan.plan_id,
                    prompts_limit=plan.prompts_limit,
                    prompts_used=0,
                    period_start=period.start,
                    period_end=period.end,
                    created_at=now_ms,
                    subscription_source="manual",
                )
            )
            subscription_id = result.inserted_primary_key[0]
    except IntegrityError:
        # Lost a create race: the unique user_id index kept the other row
        with get_db_session() as session:
            existing = _select_subscription(session, user_id)
        if existing is None:
            raise
        return existing.subscription_id

    log_event(
        "info",
        "quota.subscription_created",
        user_id=user_id,
        event_type="quota.subscription_created",
        extra={"plan": plan.plan_id, "prompts_limit": plan.prompts_limit, "period_end": period.end},
    )
    return subscription_id


def check_quota(user_id: Optional[str], now_ms: Optional[int] = None) -> Optional[QuotaStatus]:
    """
    Read-only quota view.

    Returns None when there is no caller identity. Never writes: a missing
    record is shown as fresh free-plan defaults and a stale record is shown
    as if it had rolled over.
    """
    if not user_id:
        return None
    now_ms = _now(now_ms)

    subscription = get_subscription(user_id)

    if subscription is None:
        plan = get_default_plan()
        return QuotaStatus(
            has_quota=plan.prompts_limit > 0,
            remaining=plan.prompts_limit,
            limit=plan.prompts_limit,
            used=0,
            plan=plan.plan_id,
            period_end=compute_billing_period(now_ms).end,
        )

    if subscription.is_stale(now_ms):
        return QuotaStatus(
            has_quota=subscription.prompts_limit > 0,
            remaining=subscription.prompts_limit,
            limit=subscription.prompts_limit,
            used=0,
            plan=subscription.plan,
            period_end=compute_billing_period(now_ms).end,
        )

    remaining = subscription.prompts_limit - subscription.prompts_used
    return QuotaStatus(
        has_quota=remaining > 0,
        remaining=max(0, remaining),
        limit=subscription.prompts_limit,
        used=subscription.prompts_used,
        plan=subscription.plan,
        period_end=subscription.period_end,
    )


def consume_prompt(user_id: Optional[str], count: int = 1, now_ms: Optional[int] = None) -> ConsumeResult:
    """
    Spend `count` prompts from the caller's current period.

    Either the full count is deducted or nothing changes.

    Raises:
        NotAuthenticatedError: If user_id is None
        ValidationError: If count is not a positive integer
        SubscriptionNotFoundError: If ensure_subscription was never called
        QuotaExceededError: If fewer than `count` prompts remain
    """
    user_id = _require_identity(user_id)
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise ValidationError(f"count must be a positive integer, got {count!r}")
    change = ConsumeUpdate(count=count)
    now_ms = _now(now_ms)

    with get_db_session() as session:
        subscription = _select_subscription(session, user_id)
        if subscription is None:
            raise SubscriptionNotFoundError(user_id)

        if subscription.is_stale(now_ms):
            _apply_rollover(session, subscription, now_ms)

        table = user_subscriptions
        result = session.execute(
            update(table)
            .where(table.c.id == subscription.subscription_id)
            .where(table.c.period_end > now_ms)
            .where(table.c.prompts_used + change.count <= table.c.prompts_limit)
            .values(prompts_used=table.c.prompts_used + change.count)
        )

        fresh = _select_subscription(session, user_id)
        if result.rowcount == 0:
            remaining = fresh.remaining if fresh else 0
            log_event(
                "warning",
                "quota.exceeded",
                user_id=user_id,
                event_type="quota.exceeded",
                error_code="quota_exceeded",
                extra={"requested": change.count, "remaining": remaining},
            )
            # Raising inside the session rolls back any rollover above as well
            raise QuotaExceededError(remaining=remaining, requested=change.count)

    log_event(
        "info",
        "quota.consumed",
        user_id=user_id,
        event_type="quota.consumed",
        extra={"consumed": change.count, "remaining": fresh.remaining, "plan": fresh.plan},
    )
    return ConsumeResult(remaining=fresh.remaining)


def get_usage_stats(user_id: Optional[str], now_ms: Optional[int] = None) -> Optional[UsageStats]:
    """Usage summary for display (plan name, percent used, days until reset)."""
    if not user_id:
        return None
    now_ms = _now(now_ms)

    subscription = get_subscription(user_id)
    if subscription is None:
        plan = get_default_plan()
        return UsageStats(
            plan=plan.plan_id,
            plan_name=plan.name,
            prompts_used=0,
            prompts_limit=plan.prompts_limit,
            percent_used=0,
            days_until_reset=30,
        )

    used = subscription.prompts_used
    period_end = subscription.period_end
    if subscription.is_stale(now_ms):
        used = 0
        period_end = compute_billing_period(now_ms).end

    limit = subscription.prompts_limit
    percent_used = round(used / limit * 100) if limit > 0 else 0

    return UsageStats(
        plan=subscription.plan,
        plan_name=plan_display_name(subscription.plan),
        prompts_used=used,
        prompts_limit=limit,
        percent_used=percent_used,
        days_until_reset=days_until(period_end, now_ms),
    )


def upgrade_plan(
    user_id: Optional[str],
    plan: str,
    *,
    source: str = "manual",
    external_billing_id: Optional[str] = None,
) -> Subscription:
    """
    Apply a catalog plan to the caller's record.

    prompts_used and the billing period are preserved, so remaining becomes
    new_limit - used immediately. external_billing_id is always written, so
    a manual change detaches the record from any provider billing.

    Raises:
        NotAuthenticatedError: If user_id is None
        InvalidPlanError: If plan is not in the catalog (before any write)
        SubscriptionNotFoundError: If the user has no record
    """
    user_id = _require_identity(user_id)
    catalog_plan = require_plan(plan)
    change = PlanChangeUpdate(
        plan=catalog_plan.plan_id,
        prompts_limit=catalog_plan.prompts_limit,
        subscription_source=source,
        external_billing_id=external_billing_id,
    )

    with get_db_session() as session:
        result = session.execute(
            update(user_subscriptions)
            .where(user_subscriptions.c.user_id == user_id)
            .values(
                plan=change.plan,
                prompts_limit=change.prompts_limit,
                subscription_source=change.subscription_source,
                external_billing_id=change.external_billing_id,
            )
        )
        if result.rowcount == 0:
            raise SubscriptionNotFoundError(user_id)
        subscription = _select_subscription(session, user_id)

    log_event(
        "info",
        "quota.plan_changed",
        user_id=user_id,
        event_type="quota.plan_changed",
        extra={"plan": change.plan, "prompts_limit": change.prompts_limit, "source": source},
    )
    return subscription
