"""
Billing service wiring.

Builds the catalog, provider, reconciler and ingress from settings. Routes
and jobs get their collaborators here; tests construct them directly.
"""
from functools import lru_cache
from typing import Optional

from strategyplan.core.config import settings
from strategyplan.core.errors import BillingDisabledError
from strategyplan.features.billing.catalog import PlanCatalog
from strategyplan.features.billing.ledger import EventLedger
from strategyplan.features.billing.limits import BillingLimits
from strategyplan.features.billing.provider import BillingProvider, BillingProviderError
from strategyplan.features.billing.reconciler import Reconciler
from strategyplan.features.billing.store import EntitlementStore
from strategyplan.features.billing.stripe_provider import StripeProvider
from strategyplan.features.billing.webhook import WebhookIngress
from strategyplan.features.email.service import get_email_sender
from strategyplan.features.tenants.service import TenantDirectory


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


@lru_cache(maxsize=1)
def get_catalog() -> PlanCatalog:
    return PlanCatalog.from_settings(settings)


def get_limits() -> BillingLimits:
    return BillingLimits(EntitlementStore(), TenantDirectory(), settings.free_access_tenant_ids)


def get_reconciler() -> Reconciler:
    """
    Raises:
        BillingDisabledError: If Stripe is not configured
    """
    provider = get_provider()
    if provider is None:
        raise BillingDisabledError("Billing is not configured. Set STRIPE_SECRET_KEY.")
    return Reconciler(
        provider,
        get_catalog(),
        EntitlementStore(),
        TenantDirectory(),
        get_email_sender(),
        grace_period_days=settings.PAYMENT_GRACE_PERIOD_DAYS,
    )


def get_ingress() -> WebhookIngress:
    reconciler = get_reconciler()
    return WebhookIngress(reconciler.provider, EventLedger(), reconciler)
