"""
strategyplan/models/billing.py

Billing models: plan tiers, subscription status and the per-tenant entitlement.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class Plan(str, Enum):
    """Plan tiers. Ordering for downgrades: starter < pro < team."""

    STARTER = "starter"
    PRO = "pro"
    TEAM = "team"
    LEGACY = "legacy"  # grandfathered tenants, never sold


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class Entitlement(BaseModel):
    """
    Local billing record for one tenant.

    Written only by the reconciler; everything else reads it for
    authorization and limit checks.
    """
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    provider_customer_ref: Optional[str] = None
    provider_subscription_ref: Optional[str] = None
    provider_price_ref: Optional[str] = None
    plan: Plan = Plan.STARTER
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    pending_downgrade_plan: Optional[Plan] = None
    extra_seats: int = Field(default=0, ge=0)
    pending_extra_seats: Optional[int] = None
    payment_failed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BillingHistoryEntry(BaseModel):
    """Append-only audit row."""
    model_config = ConfigDict(frozen=True)

    id: int
    tenant_id: str
    event_type: str
    description: str
    plan_before: Optional[str] = None
    plan_after: Optional[str] = None
    seats_before: Optional[int] = None
    seats_after: Optional[int] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    provider_invoice_ref: Optional[str] = None
    created_at: datetime
