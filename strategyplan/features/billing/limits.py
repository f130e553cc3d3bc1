"""
Plan limit checks and billing summaries.

Read-only projections over the entitlement plus live resource counts.
Free-access tenants and legacy tenants bypass every numeric limit.
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict

from strategyplan.core.errors import NotFoundError
from strategyplan.features.billing.catalog import PlanLimits, limits_for
from strategyplan.features.billing.store import EntitlementStore
from strategyplan.features.tenants.service import TenantDirectory
from strategyplan.models.billing import BillingHistoryEntry, Entitlement, Plan, SubscriptionStatus

HISTORY_LIMIT = 20
SEAT_PRICE_LABEL = "$6/month"


class ResourceType(str, Enum):
    STRATEGY = "strategy"
    PROJECT = "project"
    USER = "user"


class PlanLimitResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    limit: Optional[int] = None
    current: int = 0
    message: Optional[str] = None


class EditableStrategies(BaseModel):
    model_config = ConfigDict(frozen=True)

    editable_ids: List[str]
    read_only_ids: List[str]
    limit: Optional[int] = None
    total: int = 0


class PlanLimitsView(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_strategies: Optional[int] = None
    max_projects: Optional[int] = None
    max_users: int


class BillingInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    tenant_name: str
    current_plan: Plan
    status: SubscriptionStatus
    interval: str
    is_legacy: bool
    has_active_subscription: bool
    user_count: int
    max_users: int
    base_user_limit: int
    extra_seats: int
    pending_extra_seats: Optional[int] = None
    limits: PlanLimitsView
    trial_ends_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    pending_downgrade: Optional[Plan] = None
    payment_failed: bool
    billing_history: List[BillingHistoryEntry]


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def is_within_grace_period(entitlement: Entitlement, now: Optional[datetime] = None, grace_period_days: int = 30) -> bool:
    """
    Access policy helper for past-due tenants.

    True when no payment has failed, or the failure is younger than the grace window.
    """
    if entitlement.payment_failed_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    return now < entitlement.payment_failed_at + timedelta(days=grace_period_days)


class BillingLimits:
    def __init__(self, store: EntitlementStore, directory: TenantDirectory, free_access_tenant_ids: Iterable[str] = ()):
        self.store = store
        self.directory = directory
        self.free_access_tenant_ids = frozenset(free_access_tenant_ids)

    def _entitlement(self, tenant_id: str) -> Entitlement:
        return self.store.get(tenant_id) or Entitlement(tenant_id=tenant_id)

    def _bypasses_limits(self, tenant_id: str, is_legacy: bool) -> bool:
        return tenant_id in self.free_access_tenant_ids or is_legacy

    def check_plan_limits(self, tenant_id: str, resource_type: ResourceType) -> PlanLimitResult:
        tenant = self.directory.get_tenant(tenant_id)
        if tenant is None:
            return PlanLimitResult(allowed=False, limit=0, current=0, message="Organization not found")

        if self._bypasses_limits(tenant_id, tenant.is_legacy):
            return PlanLimitResult(allowed=True, limit=None, current=0)

        entitlement = self._entitlement(tenant_id)
        plan = entitlement.plan
        limits = limits_for(plan)

        if resource_type == ResourceType.STRATEGY:
            current = self.directory.count_active_strategies(tenant_id)
            limit = limits.max_strategies
            if limit is not None and current >= limit:
                noun = _plural(limit, "priority", "priorities")
                return PlanLimitResult(
                    allowed=False,
                    limit=limit,
                    current=current,
                    message=f"You've reached the limit of {limit} strategic {noun} on the {plan.value} plan. Upgrade to add more.",
                )
            return PlanLimitResult(allowed=True, limit=limit, current=current)

        if resource_type == ResourceType.PROJECT:
            current = self.directory.count_active_projects(tenant_id)
            limit = limits.max_projects
            if limit is not None and current >= limit:
                return PlanLimitResult(
                    allowed=False,
                    limit=limit,
                    current=current,
                    message=f"You've reached the limit of {limit} projects on the {plan.value} plan. Upgrade to add more.",
                )
            return PlanLimitResult(allowed=True, limit=limit, current=current)

        # Pending seats are not billed yet and never count here
        current = self.directory.count_users(tenant_id)
        base_limit = limits.max_users
        total_limit = base_limit + entitlement.extra_seats
        if current >= total_limit:
            if plan == Plan.TEAM:
                message = (
                    f"You have {current} users. Add more seats ({SEAT_PRICE_LABEL} each) "
                    "to invite additional team members."
                )
            else:
                noun = _plural(base_limit, "user", "users")
                message = f"The {plan.value} plan allows only {base_limit} {noun}. Upgrade to add team members."
            return PlanLimitResult(allowed=False, limit=total_limit, current=current, message=message)
        return PlanLimitResult(allowed=True, limit=total_limit, current=current)

    def get_editable_strategy_ids(self, tenant_id: str) -> EditableStrategies:
        """Oldest strategies stay editable up to the plan limit; the rest are read-only."""
        tenant = self.directory.get_tenant(tenant_id)
        if tenant is None:
            return EditableStrategies(editable_ids=[], read_only_ids=[], limit=0, total=0)

        strategy_ids = self.directory.list_active_strategy_ids(tenant_id)
        if self._bypasses_limits(tenant_id, tenant.is_legacy):
            return EditableStrategies(editable_ids=strategy_ids, read_only_ids=[], limit=None, total=len(strategy_ids))

        limit = limits_for(self._entitlement(tenant_id).plan).max_strategies
        if limit is None:
            return EditableStrategies(editable_ids=strategy_ids, read_only_ids=[], limit=None, total=len(strategy_ids))

        return EditableStrategies(
            editable_ids=strategy_ids[:limit],
            read_only_ids=strategy_ids[limit:],
            limit=limit,
            total=len(strategy_ids),
        )

    def get_organization_billing_info(self, tenant_id: str) -> BillingInfo:
        tenant = self.directory.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("Organization not found")

        entitlement = self._entitlement(tenant_id)
        limits: PlanLimits = limits_for(entitlement.plan)
        has_active_subscription = bool(
            entitlement.provider_subscription_ref
            and entitlement.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
        )

        return BillingInfo(
            tenant_id=tenant.id,
            tenant_name=tenant.name,
            current_plan=entitlement.plan,
            status=entitlement.status,
            interval=entitlement.billing_interval.value,
            is_legacy=tenant.is_legacy,
            has_active_subscription=has_active_subscription,
            user_count=self.directory.count_users(tenant_id),
            max_users=limits.max_users + entitlement.extra_seats,
            base_user_limit=limits.max_users,
            extra_seats=entitlement.extra_seats,
            pending_extra_seats=entitlement.pending_extra_seats,
            limits=PlanLimitsView(
                max_strategies=limits.max_strategies,
                max_projects=limits.max_projects,
                max_users=limits.max_users,
            ),
            trial_ends_at=entitlement.trial_ends_at,
            current_period_end=entitlement.current_period_end,
            cancel_at_period_end=entitlement.cancel_at_period_end,
            pending_downgrade=entitlement.pending_downgrade_plan,
            payment_failed=entitlement.payment_failed_at is not None,
            billing_history=self.store.list_history(tenant_id, limit=HISTORY_LIMIT),
        )
