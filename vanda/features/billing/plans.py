"""
vanda/features/billing/plans.py

Static plan catalog.

Changing a limit means redeploying the catalog. Existing subscription
records keep their prompts_limit until the plan is applied again.
"""

from typing import Dict, Optional

from vanda.core.config import settings
from vanda.core.errors import InvalidPlanError
from vanda.models.plan import Plan


DEFAULT_PLAN_ID = "free"

PLANS: Dict[str, Plan] = {
    "free": Plan(
        plan_id="free",
        name="Free",
        prompts_limit=settings.FREE_PROMPTS_LIMIT,
        is_default=True,
    ),
    "pro": Plan(
        plan_id="pro",
        name="Pro",
        prompts_limit=settings.PRO_PROMPTS_LIMIT,
    ),
}


def get_plan(plan_id: str) -> Optional[Plan]:
    return PLANS.get(plan_id)


def require_plan(plan_id: str) -> Plan:
    """Resolve a plan id or raise InvalidPlanError."""
    plan = PLANS.get(plan_id)
    if plan is None:
        raise InvalidPlanError(plan_id)
    return plan


def get_default_plan() -> Plan:
    return PLANS[DEFAULT_PLAN_ID]


def plan_display_name(plan_id: str) -> str:
    plan = PLANS.get(plan_id)
    return plan.name if plan else plan_id
