"""
Billing API routes.

- GET  /api/billing/quota: Current quota (null when anonymous)
- GET  /api/billing/usage: Usage summary (null when anonymous)
- POST /api/billing/subscription: Ensure the caller has a current record
- POST /api/billing/plan: Admin plan change (X-Admin-Key)
- POST /api/billing/webhook: Billing provider webhooks
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from vanda.core.admin_auth import require_admin_key
from vanda.core.auth import get_optional_user_id, require_user_id
from vanda.core.logging import log_event
from vanda.features.billing.webhooks import process_webhook_event
from vanda.features.usage.service import (
    check_quota,
    ensure_subscription,
    get_usage_stats,
    upgrade_plan,
)
from vanda.models.subscription import QuotaStatus, Subscription, UsageStats


router = APIRouter(prefix="/billing", tags=["billing"])


class EnsureSubscriptionResponse(BaseModel):
    subscription_id: int


class PlanChangeRequest(BaseModel):
    user_id: str
    plan: str


class WebhookResponse(BaseModel):
    received: bool
    event_id: str
    duplicate: bool


@router.get("/quota", response_model=Optional[QuotaStatus])
def get_quota(user_id: Optional[str] = Depends(get_optional_user_id)):
    return check_quota(user_id)


@router.get("/usage", response_model=Optional[UsageStats])
def get_usage(user_id: Optional[str] = Depends(get_optional_user_id)):
    return get_usage_stats(user_id)


@router.post("/subscription", response_model=EnsureSubscriptionResponse)
def post_subscription(user_id: Optional[str] = Depends(get_optional_user_id)):
    """Create the caller's free-plan record on first use, or roll it over."""
    subscription_id = ensure_subscription(require_user_id(user_id))
    return {"subscription_id": subscription_id}


@router.post("/plan", response_model=Subscription)
def post_plan(body: PlanChangeRequest, actor: str = Depends(require_admin_key)):
    """
    Change a user's plan without touching usage or the billing period.

    Errors:
        400: Unknown plan
        403: Missing or wrong admin key
        500: User has no subscription record
    """
    subscription = upgrade_plan(body.user_id, body.plan, source="manual")
    log_event(
        "info",
        "admin.plan_changed",
        user_id=body.user_id,
        extra={"actor": actor, "plan": body.plan},
    )
    return subscription


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request):
    """
    Billing provider webhook.

    Raw body is required for signature verification. Deduplication uses the
    provider event id (billing_events table).
    """
    body = await request.body()
    result = process_webhook_event(dict(request.headers), body)
    return {
        "received": True,
        "event_id": result.event.event_id,
        "duplicate": result.duplicate,
    }
