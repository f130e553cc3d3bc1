"""
strategyplan/models/lifecycle.py

Subscription lifecycle as a closed set of states.

    Unprovisioned -> Active(trialing?) -> {PastDue, CancelPending, DowngradePending} -> Canceled

The state is never stored as one column; it is derived from the entitlement
fields with `lifecycle_of` and written back with `as_fields()` (every state
but Unprovisioned, which is never a transition target). Each state
only emits the columns it governs, so a transition never clobbers unrelated
fields (seats, period boundaries).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

from strategyplan.models.billing import Entitlement, Plan, SubscriptionStatus

TIER_ORDER: Dict[Plan, int] = {
    Plan.STARTER: 1,
    Plan.PRO: 2,
    Plan.TEAM: 3,
}


def is_lower_tier(target: Plan, current: Plan) -> bool:
    """True when `target` sits strictly below `current` in the sellable tier order."""
    if target not in TIER_ORDER or current not in TIER_ORDER:
        return False
    return TIER_ORDER[target] < TIER_ORDER[current]


@dataclass(frozen=True)
class Unprovisioned:
    """No subscription yet; nothing to write back."""


@dataclass(frozen=True)
class Active:
    subscription_ref: str
    trialing: bool = False
    trial_ends_at: Optional[datetime] = None

    def as_fields(self) -> Dict[str, Any]:
        status = SubscriptionStatus.TRIALING if self.trialing else SubscriptionStatus.ACTIVE
        return {
            "provider_subscription_ref": self.subscription_ref,
            "status": status.value,
            "trial_ends_at": self.trial_ends_at,
            "pending_downgrade_plan": None,
            "payment_failed_at": None,
        }


@dataclass(frozen=True)
class PastDue:
    payment_failed_at: Optional[datetime] = None

    def as_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"status": SubscriptionStatus.PAST_DUE.value}
        if self.payment_failed_at is not None:
            fields["payment_failed_at"] = self.payment_failed_at
        return fields


@dataclass(frozen=True)
class CancelPending:
    subscription_ref: str

    def as_fields(self) -> Dict[str, Any]:
        return {
            "provider_subscription_ref": self.subscription_ref,
            "cancel_at_period_end": True,
            "pending_downgrade_plan": None,
        }


@dataclass(frozen=True)
class DowngradePending:
    subscription_ref: str
    plan: Plan
    target: Plan

    def __post_init__(self):
        if not is_lower_tier(self.target, self.plan):
            raise ValueError(
                f"Downgrade target {self.target.value} is not below {self.plan.value}"
            )

    def as_fields(self) -> Dict[str, Any]:
        return {
            "provider_subscription_ref": self.subscription_ref,
            "cancel_at_period_end": True,
            "pending_downgrade_plan": self.target.value,
        }


@dataclass(frozen=True)
class Canceled:
    def as_fields(self) -> Dict[str, Any]:
        return {
            "status": SubscriptionStatus.CANCELED.value,
            "provider_subscription_ref": None,
            "provider_price_ref": None,
            "cancel_at_period_end": False,
            "pending_downgrade_plan": None,
        }


LifecycleState = Union[Unprovisioned, Active, PastDue, CancelPending, DowngradePending, Canceled]


def lifecycle_of(entitlement: Optional[Entitlement]) -> LifecycleState:
    """Summarize entitlement fields into a lifecycle state."""
    if entitlement is None:
        return Unprovisioned()
    if entitlement.status == SubscriptionStatus.CANCELED:
        return Canceled()
    sub_ref = entitlement.provider_subscription_ref
    if not sub_ref:
        return Unprovisioned()
    if entitlement.status == SubscriptionStatus.PAST_DUE:
        return PastDue(payment_failed_at=entitlement.payment_failed_at)
    if entitlement.pending_downgrade_plan is not None:
        return DowngradePending(
            subscription_ref=sub_ref,
            plan=entitlement.plan,
            target=entitlement.pending_downgrade_plan,
        )
    if entitlement.cancel_at_period_end:
        return CancelPending(subscription_ref=sub_ref)
    return Active(
        subscription_ref=sub_ref,
        trialing=entitlement.status == SubscriptionStatus.TRIALING,
        trial_ends_at=entitlement.trial_ends_at,
    )


def status_from_provider(provider_status: Optional[str]) -> SubscriptionStatus:
    """trialing/past_due/canceled pass through; anything else is active."""
    if provider_status == "trialing":
        return SubscriptionStatus.TRIALING
    if provider_status == "past_due":
        return SubscriptionStatus.PAST_DUE
    if provider_status == "canceled":
        return SubscriptionStatus.CANCELED
    return SubscriptionStatus.ACTIVE
