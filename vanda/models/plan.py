"""
vanda/models/plan.py

Plan model for the prompt quota catalog.

Plans are capability tiers (free, pro) that fix how many prompts a user may
spend per billing period.
"""

from pydantic import BaseModel, ConfigDict, Field


class Plan(BaseModel):
    """
    Plan represents a quota tier.

    Examples:
    - free (default): 10 prompts per month
    - pro: 100 prompts per month

    Plans do NOT include pricing; that lives with the billing provider.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    prompts_limit: int = Field(ge=0)
    is_default: bool = False
