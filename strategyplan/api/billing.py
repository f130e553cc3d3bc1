"""
Billing API routes.

- POST   /api/billing/webhook: Stripe webhook ingress (raw body + Stripe-Signature)
- POST   /api/billing/checkout: Checkout session for the caller's organization
- POST   /api/billing/checkout/guest: Checkout without an account (auto-provisioned)
- POST   /api/billing/portal: Billing portal session
- GET    /api/billing/info: Billing summary for the caller's organization
- GET    /api/billing/limits/{resource_type}: Plan limit check
- GET    /api/billing/strategies/editable: Editable vs read-only strategies
- POST   /api/billing/downgrade, DELETE /api/billing/downgrade
- POST   /api/billing/seats, DELETE /api/billing/seats
- POST   /api/billing/cancel, /reactivate, /sync

Mutating routes require an administrator. Collaborators come from
features.billing.service via Depends so tests can override them.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from strategyplan.core.auth import get_current_user, require_admin
from strategyplan.features.billing.limits import (
    BillingInfo,
    BillingLimits,
    EditableStrategies,
    PlanLimitResult,
    ResourceType,
)
from strategyplan.features.billing.provider import BillingWebhookError
from strategyplan.features.billing.reconciler import Reconciler
from strategyplan.features.billing.service import get_ingress, get_limits, get_reconciler
from strategyplan.features.billing.webhook import WebhookIngress
from strategyplan.models.billing import BillingInterval, Entitlement, Plan, SubscriptionStatus
from strategyplan.models.user import User


router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    plan: Plan
    interval: BillingInterval = BillingInterval.MONTHLY
    success_url: str
    cancel_url: str
    trial_days: Optional[int] = Field(default=None, ge=1)


class PortalRequest(BaseModel):
    return_url: str


class UrlResponse(BaseModel):
    url: str


class DowngradeRequest(BaseModel):
    target_plan: Plan


class SeatsRequest(BaseModel):
    count: int = Field(ge=1)


class SeatsResponse(BaseModel):
    seats_changed: int
    extra_seats: int


class CancelRequest(BaseModel):
    at_period_end: bool = True


class EntitlementResponse(BaseModel):
    """Caller-facing view of the entitlement (no provider refs)."""
    plan: Plan
    status: SubscriptionStatus
    interval: BillingInterval
    cancel_at_period_end: bool
    pending_downgrade_plan: Optional[Plan] = None
    extra_seats: int
    current_period_end: Optional[datetime] = None

    @classmethod
    def from_entitlement(cls, entitlement: Entitlement) -> "EntitlementResponse":
        return cls(
            plan=entitlement.plan,
            status=entitlement.status,
            interval=entitlement.billing_interval,
            cancel_at_period_end=entitlement.cancel_at_period_end,
            pending_downgrade_plan=entitlement.pending_downgrade_plan,
            extra_seats=entitlement.extra_seats,
            current_period_end=entitlement.current_period_end,
        )


class SyncResponse(BaseModel):
    plan: Plan
    status: str
    subscription_ref: Optional[str] = None


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    ingress: WebhookIngress = Depends(get_ingress),
):
    """
    Handle Stripe webhook events.

    Returns 200 for processed, duplicate and failed-in-handler events alike;
    only signature/payload problems are rejected.

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    # Raw body is required for signature verification
    body = await request.body()
    try:
        result = ingress.handle(body, stripe_signature)
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"received": True, "event_id": result.event_id, "duplicate": result.duplicate}


@router.post("/checkout", response_model=UrlResponse)
def create_checkout(
    payload: CheckoutRequest,
    user: User = Depends(require_admin),
    reconciler: Reconciler = Depends(get_reconciler),
):
    url = reconciler.start_checkout(
        user.tenant_id,
        payload.plan,
        payload.interval,
        payload.success_url,
        payload.cancel_url,
        trial_days=payload.trial_days,
    )
    return {"url": url}


@router.post("/checkout/guest", response_model=UrlResponse)
def create_guest_checkout(payload: CheckoutRequest, reconciler: Reconciler = Depends(get_reconciler)):
    """Purchase without an account; the organization is created when checkout completes."""
    url = reconciler.start_guest_checkout(
        payload.plan,
        payload.interval,
        payload.success_url,
        payload.cancel_url,
        trial_days=payload.trial_days,
    )
    return {"url": url}


@router.post("/portal", response_model=UrlResponse)
def create_portal(
    payload: PortalRequest,
    user: User = Depends(require_admin),
    reconciler: Reconciler = Depends(get_reconciler),
):
    return {"url": reconciler.start_portal(user.tenant_id, payload.return_url)}


@router.get("/info", response_model=BillingInfo)
def billing_info(user: User = Depends(get_current_user), limits: BillingLimits = Depends(get_limits)):
    return limits.get_organization_billing_info(user.tenant_id)


@router.get("/limits/{resource_type}", response_model=PlanLimitResult)
def plan_limits(
    resource_type: ResourceType,
    user: User = Depends(get_current_user),
    limits: BillingLimits = Depends(get_limits),
):
    return limits.check_plan_limits(user.tenant_id, resource_type)


@router.get("/strategies/editable", response_model=EditableStrategies)
def editable_strategies(user: User = Depends(get_current_user), limits: BillingLimits = Depends(get_limits)):
    return limits.get_editable_strategy_ids(user.tenant_id)


@router.post("/downgrade", response_model=EntitlementResponse)
def schedule_downgrade(
    payload: DowngradeRequest,
    user: User = Depends(require_admin),
    reconciler: Reconciler = Depends(get_reconciler),
):
    entitlement = reconciler.schedule_downgrade(user.tenant_id, payload.target_plan)
    return EntitlementResponse.from_entitlement(entitlement)


@router.delete("/downgrade", response_model=EntitlementResponse)
def cancel_downgrade(user: User = Depends(require_admin), reconciler: Reconciler = Depends(get_reconciler)):
    entitlement = reconciler.cancel_pending_downgrade(user.tenant_id)
    return EntitlementResponse.from_entitlement(entitlement)


@router.post("/seats", response_model=SeatsResponse)
def add_seats(
    payload: SeatsRequest,
    user: User = Depends(require_admin),
    reconciler: Reconciler = Depends(get_reconciler),
):
    change = reconciler.add_seats(user.tenant_id, payload.count)
    return {"seats_changed": change.seats_changed, "extra_seats": change.extra_seats}


@router.delete("/seats", response_model=SeatsResponse)
def remove_seats(
    count: int = 1,
    user: User = Depends(require_admin),
    reconciler: Reconciler = Depends(get_reconciler),
):
    change = reconciler.remove_seats(user.tenant_id, count)
    return {"seats_changed": change.seats_changed, "extra_seats": change.extra_seats}


@router.post("/cancel", response_model=EntitlementResponse)
def cancel_subscription(
    payload: CancelRequest,
    user: User = Depends(require_admin),
    reconciler: Reconciler = Depends(get_reconciler),
):
    entitlement = reconciler.cancel_subscription(user.tenant_id, at_period_end=payload.at_period_end)
    return EntitlementResponse.from_entitlement(entitlement)


@router.post("/reactivate", response_model=EntitlementResponse)
def reactivate_subscription(user: User = Depends(require_admin), reconciler: Reconciler = Depends(get_reconciler)):
    entitlement = reconciler.reactivate_subscription(user.tenant_id)
    return EntitlementResponse.from_entitlement(entitlement)


@router.post("/sync", response_model=SyncResponse)
def sync_subscription(user: User = Depends(require_admin), reconciler: Reconciler = Depends(get_reconciler)):
    result = reconciler.sync_from_provider(user.tenant_id)
    return {"plan": result.plan, "status": result.status, "subscription_ref": result.subscription_ref}
