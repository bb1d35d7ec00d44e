"""
Plan entitlements for workflow step types.
"""
from typing import Dict, FrozenSet, List, Optional, Union

from collections_engine.models.workflow import PlanTier, StepType

PlanLike = Optional[Union[PlanTier, str]]
StepLike = Union[StepType, str]

PLAN_STEP_TYPES: Dict[PlanTier, FrozenSet[StepType]] = {
    PlanTier.FREE: frozenset({StepType.EMAIL, StepType.PHYSICAL}),
    PlanTier.PROFESSIONAL: frozenset(
        {StepType.EMAIL, StepType.PHYSICAL, StepType.SMS, StepType.WAIT}
    ),
    PlanTier.ENTERPRISE: frozenset(StepType),
}

# Display order for allowed step types
_STEP_ORDER = [StepType.EMAIL, StepType.PHYSICAL, StepType.SMS, StepType.WAIT]

UPGRADE_MESSAGES: Dict[StepType, Dict[PlanTier, str]] = {
    StepType.SMS: {
        PlanTier.FREE: "Upgrade to Professional to send SMS messages in workflows",
        PlanTier.PROFESSIONAL: "SMS is included in your plan",
    },
    StepType.WAIT: {
        PlanTier.FREE: "Upgrade to Professional to create automated workflows with follow-ups",
        PlanTier.PROFESSIONAL: "Workflows are included in your plan",
    },
}

DEFAULT_UPGRADE_MESSAGE = "This feature requires a higher plan. Consider upgrading for full access."


def resolve_plan(plan: PlanLike) -> PlanTier:
    """Map a plan name to a tier. Unknown or missing plans are treated as free."""
    if isinstance(plan, PlanTier):
        return plan
    if not plan:
        return PlanTier.FREE
    try:
        return PlanTier(str(plan).strip().lower())
    except ValueError:
        return PlanTier.FREE


def is_step_allowed(plan: PlanLike, step_type: StepLike) -> bool:
    """Whether a tenant on ``plan`` may run a step of ``step_type``."""
    try:
        step = StepType(step_type)
    except ValueError:
        return False
    return step in PLAN_STEP_TYPES[resolve_plan(plan)]


def get_allowed_step_types(plan: PlanLike) -> List[str]:
    allowed = PLAN_STEP_TYPES[resolve_plan(plan)]
    return [step.value for step in _STEP_ORDER if step in allowed]


def get_upgrade_message(plan: PlanLike, step_type: StepLike) -> str:
    """Upgrade hint shown when a step type is unavailable on a plan."""
    tier = resolve_plan(plan)
    try:
        step = StepType(step_type)
    except ValueError:
        return DEFAULT_UPGRADE_MESSAGE
    return UPGRADE_MESSAGES.get(step, {}).get(tier, DEFAULT_UPGRADE_MESSAGE)


def restriction_reason(plan: PlanLike, step_type: StepLike) -> str:
    """Skip reason recorded on executions the plan does not allow."""
    step_value = step_type.value if isinstance(step_type, StepType) else str(step_type)
    return f"{step_value} step not available on {resolve_plan(plan).value} plan"
