"""Plan limits derived from (plan, billing period) at read time."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Union

from services.billing_types import BillingPeriod, Plan


@dataclass(frozen=True)
class PlanLimits:
    max_users: int
    max_locations: int
    max_contacts: int
    max_prompt_pages: int
    monthly_included_credits: int

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


_NO_PLAN_LIMITS = PlanLimits(
    max_users=1,
    max_locations=0,
    max_contacts=0,
    max_prompt_pages=0,
    monthly_included_credits=0,
)

_PLAN_LIMITS: Dict[Plan, PlanLimits] = {
    Plan.NO_PLAN: _NO_PLAN_LIMITS,
    Plan.FREE: PlanLimits(
        max_users=1,
        max_locations=0,
        max_contacts=100,
        max_prompt_pages=10,
        monthly_included_credits=0,
    ),
    Plan.GROWER: PlanLimits(
        max_users=1,
        max_locations=0,
        max_contacts=200,
        max_prompt_pages=50,
        monthly_included_credits=100,
    ),
    Plan.BUILDER: PlanLimits(
        max_users=3,
        max_locations=0,
        max_contacts=1000,
        max_prompt_pages=500,
        monthly_included_credits=200,
    ),
    Plan.MAVEN: PlanLimits(
        max_users=5,
        max_locations=10,
        max_contacts=10000,
        max_prompt_pages=2500,
        monthly_included_credits=400,
    ),
}


def plan_limits(
    plan: Union[Plan, str, None],
    billing_period: Union[BillingPeriod, str, None] = None,
) -> PlanLimits:
    """Return limits for a plan. Billing period does not change limits today."""
    try:
        resolved = Plan(plan) if plan else Plan.NO_PLAN
    except ValueError:
        return _NO_PLAN_LIMITS
    return _PLAN_LIMITS.get(resolved, _NO_PLAN_LIMITS)


def included_credit_allotment(plan: Union[Plan, str, None]) -> int:
    return plan_limits(plan).monthly_included_credits
