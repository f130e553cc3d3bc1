# strategyplan/conftest.py
import pytest

from strategyplan.core.database import init_engine, reset_database
from strategyplan.features.billing.catalog import PlanCatalog, PlanPrice, SeatPrice
from strategyplan.features.billing.ledger import EventLedger
from strategyplan.features.billing.limits import BillingLimits
from strategyplan.features.billing.reconciler import Reconciler
from strategyplan.features.billing.store import EntitlementStore
from strategyplan.features.billing.webhook import WebhookIngress
from strategyplan.features.tenants.service import TenantDirectory
from strategyplan.models.billing import BillingInterval, Plan
from strategyplan.models.user import ADMIN_ROLE
from strategyplan.tests.fakes import (
    FIXED_NOW,
    PRO_ANNUAL,
    PRO_MONTHLY,
    SEAT_ANNUAL,
    SEAT_MONTHLY,
    STARTER_MONTHLY,
    TEAM_ANNUAL,
    TEAM_MONTHLY,
    FakeBillingProvider,
    RecordingEmailSender,
)


@pytest.fixture(autouse=True)
def db():
    """Fresh in-memory SQLite database for every test."""
    init_engine("sqlite://")
    reset_database()
    yield


@pytest.fixture
def catalog():
    return PlanCatalog(
        [
            PlanPrice(STARTER_MONTHLY, Plan.STARTER, BillingInterval.MONTHLY),
            PlanPrice(PRO_MONTHLY, Plan.PRO, BillingInterval.MONTHLY),
            PlanPrice(PRO_ANNUAL, Plan.PRO, BillingInterval.ANNUAL),
            PlanPrice(TEAM_MONTHLY, Plan.TEAM, BillingInterval.MONTHLY),
            PlanPrice(TEAM_ANNUAL, Plan.TEAM, BillingInterval.ANNUAL),
        ],
        [
            SeatPrice(SEAT_MONTHLY, BillingInterval.MONTHLY),
            SeatPrice(SEAT_ANNUAL, BillingInterval.ANNUAL),
        ],
    )


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def mailer():
    return RecordingEmailSender()


@pytest.fixture
def store():
    return EntitlementStore()


@pytest.fixture
def directory():
    return TenantDirectory()


@pytest.fixture
def ledger():
    return EventLedger()


@pytest.fixture
def reconciler(provider, catalog, store, directory, mailer):
    return Reconciler(provider, catalog, store, directory, mailer, clock=lambda: FIXED_NOW)


@pytest.fixture
def ingress(provider, ledger, reconciler):
    return WebhookIngress(provider, ledger, reconciler)


@pytest.fixture
def limits(store, directory):
    return BillingLimits(store, directory, free_access_tenant_ids={"tenant_free"})


@pytest.fixture
def make_tenant(directory, store):
    """
    Create a tenant with an administrator and, optionally, an entitlement.

    Returns the tenant id; the admin's user id is "<tenant_id>_admin".
    """
    def _make(tenant_id="tenant_1", *, is_legacy=False, entitlement=None):
        directory.create_tenant(f"{tenant_id} Org", is_legacy=is_legacy, tenant_id=tenant_id)
        directory.create_user(
            tenant_id,
            f"admin@{tenant_id}.test",
            first_name="Ada",
            role=ADMIN_ROLE,
            user_id=f"{tenant_id}_admin",
        )
        if entitlement is not None:
            store.upsert(tenant_id, entitlement)
        return tenant_id

    return _make
