"""
Subscription plans and role tiers.

Each paid plan grants exactly one role. Stripe price ids are the join key
between what a customer pays for and what they may do in the app, so the
lookups here are used both when creating checkout sessions and when
interpreting webhook events.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from api.src.exceptions import InvalidPlanError


class Role(str, Enum):
    """
    User role tiers (values match the database enum).

    - NOSUBS: free account, no active subscription
    - TIER1..TIER4: ZapTrip, ZapOut, ZapRoad, ZapPro
    - ADMIN: staff
    - ENTERPRISE: legacy value still present in the enum
    """
    NOSUBS = "nosubs"
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"
    TIER4 = "tier4"
    ADMIN = "admin"
    ENTERPRISE = "enterprise"


VALID_ROLES = frozenset(role.value for role in Role)


@dataclass(frozen=True)
class Plan:
    """A purchasable plan with its monthly and yearly Stripe prices."""
    key: str
    name: str
    role: Role
    monthly_price_id: str
    yearly_price_id: str

    def price_id(self, yearly: bool) -> str:
        return self.yearly_price_id if yearly else self.monthly_price_id


PLANS: Dict[str, Plan] = {
    "zaptrip": Plan(
        key="zaptrip",
        name="ZapTrip",
        role=Role.TIER1,
        monthly_price_id="price_1RPYZoAIHt9nXEEBgibR4tIv",
        yearly_price_id="price_1RPYZoAIHt9nXEEB35wmO9wV",
    ),
    "zapout": Plan(
        key="zapout",
        name="ZapOut",
        role=Role.TIER2,
        monthly_price_id="price_1RPYWCAIHt9nXEEBOeMCPih7",
        yearly_price_id="price_1RPYWCAIHt9nXEEB5xZmsLkG",
    ),
    "zaproad": Plan(
        key="zaproad",
        name="ZapRoad",
        role=Role.TIER3,
        monthly_price_id="price_1RPYY0AIHt9nXEEBoKuPI93Q",
        yearly_price_id="price_1RPYY0AIHt9nXEEB2mnbrRrj",
    ),
    "zappro": Plan(
        key="zappro",
        name="ZapPro",
        role=Role.TIER4,
        monthly_price_id="price_1RPYeJAIHt9nXEEB0mn2LUCx",
        yearly_price_id="price_1RPYeJAIHt9nXEEBxXrxFaZz",
    ),
}

FREE_PLAN_KEY = "free"

# price id -> (plan, is_yearly)
_PRICE_INDEX: Dict[str, tuple[Plan, bool]] = {}
for _plan in PLANS.values():
    _PRICE_INDEX[_plan.monthly_price_id] = (_plan, False)
    _PRICE_INDEX[_plan.yearly_price_id] = (_plan, True)

_ROLE_TO_PLAN_KEY: Dict[Role, str] = {plan.role: plan.key for plan in PLANS.values()}


def role_for_price(price_id: Optional[str]) -> Optional[Role]:
    """Role granted by a Stripe price, or None for an unmapped price."""
    entry = _PRICE_INDEX.get(price_id or "")
    return entry[0].role if entry else None


def plan_name_for_price(price_id: Optional[str]) -> Optional[str]:
    """Human plan name for a price, e.g. ``ZapTrip Yearly``."""
    entry = _PRICE_INDEX.get(price_id or "")
    if not entry:
        return None
    plan, yearly = entry
    return f"{plan.name} {'Yearly' if yearly else 'Monthly'}"


def is_yearly_price(price_id: Optional[str]) -> bool:
    entry = _PRICE_INDEX.get(price_id or "")
    return bool(entry and entry[1])


def get_plan(key: Optional[str]) -> Plan:
    """
    Look up a plan by key.

    Raises:
        InvalidPlanError: If the key is not a known plan
    """
    plan = PLANS.get((key or "").lower())
    if plan is None:
        raise InvalidPlanError("Invalid plan selected", details=f"unknown plan '{key}'")
    return plan


def price_for_plan(key: str, yearly: bool) -> str:
    return get_plan(key).price_id(yearly)


def plan_key_for_role(role: Optional[str]) -> str:
    """Plan key for a stored role; ``free`` for nosubs and anything unmapped."""
    try:
        return _ROLE_TO_PLAN_KEY.get(Role(role), FREE_PLAN_KEY)
    except ValueError:
        return FREE_PLAN_KEY


def plan_display_name_for_role(role: Optional[str]) -> str:
    """Display name of the plan behind a role, used as "previous plan" in emails."""
    key = plan_key_for_role(role)
    if key == FREE_PLAN_KEY:
        return "Free"
    return PLANS[key].name


def normalize_role(value: Optional[str]) -> Role:
    """
    Coerce a stored or metadata role string to a Role.

    Missing, ``"undefined"`` and unknown values become ``nosubs``.
    """
    if not value or value == "undefined":
        return Role.NOSUBS
    try:
        return Role(value)
    except ValueError:
        return Role.NOSUBS


def parse_flag(value) -> bool:
    """Stripe metadata values are strings; ``"true"`` means True."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def billing_label(plan_key: str, yearly: bool) -> str:
    """Value stored in ``payments.subscription_name``, e.g. ``zaptrip-yearly``."""
    return f"{plan_key}-{'yearly' if yearly else 'monthly'}"
