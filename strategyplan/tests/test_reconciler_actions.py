"""
User-initiated billing actions.

The provider call always comes first; when it fails the local entitlement
must be exactly what it was before.
"""
from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import select

from strategyplan.core.database import get_db_session, payment_failures
from strategyplan.core.errors import BillingActionError, ConflictError, NotFoundError, ValidationError
from strategyplan.features.billing.events import InvoicePaymentFailed, InvoicePaymentSucceeded, SubscriptionDeleted
from strategyplan.features.billing.provider import ProviderInvoice, SubscriptionItem
from strategyplan.models.billing import BillingInterval, Plan, SubscriptionStatus
from strategyplan.tests.fakes import (
    FIXED_NOW,
    PRO_ANNUAL,
    PRO_MONTHLY,
    SEAT_ANNUAL,
    SEAT_MONTHLY,
    STARTER_MONTHLY,
    TEAM_ANNUAL,
    TEAM_MONTHLY,
)


@pytest.fixture
def team_tenant(make_tenant, provider):
    provider.add_subscription("cus_1", TEAM_MONTHLY, sub_id="sub_team")
    return make_tenant("t1", entitlement={
        "provider_customer_ref": "cus_1",
        "provider_subscription_ref": "sub_team",
        "provider_price_ref": TEAM_MONTHLY,
        "plan": Plan.TEAM,
    })


# --- downgrade -------------------------------------------------------------

def test_schedule_downgrade_marks_pending_after_provider(reconciler, provider, store, team_tenant):
    ent = reconciler.schedule_downgrade("t1", Plan.PRO)

    assert provider.calls[-1] == ("update_subscription", "sub_team", True)
    assert ent.pending_downgrade_plan == Plan.PRO
    assert ent.cancel_at_period_end is True
    assert ent.plan == Plan.TEAM
    assert store.list_history("t1")[0].event_type == "downgrade_scheduled"


def test_downgrade_takes_effect_only_on_deletion(reconciler, provider, store, team_tenant):
    reconciler.schedule_downgrade("t1", Plan.STARTER)

    ent = store.get("t1")
    assert (ent.plan, ent.pending_downgrade_plan, ent.cancel_at_period_end) == (Plan.TEAM, Plan.STARTER, True)

    ended = replace(provider.subscriptions["sub_team"], status="canceled")
    reconciler.dispatch(SubscriptionDeleted("evt_deleted", ended))

    ent = store.get("t1")
    assert ent.plan == Plan.STARTER
    assert ent.pending_downgrade_plan is None
    assert ent.cancel_at_period_end is False
    assert ent.status == SubscriptionStatus.ACTIVE
    assert ent.provider_subscription_ref not in (None, "sub_team")
    assert provider.subscriptions[ent.provider_subscription_ref].items[0].price_ref == STARTER_MONTHLY


@pytest.mark.parametrize("target", [Plan.TEAM, Plan.LEGACY])
def test_downgrade_to_same_or_higher_rejected(reconciler, provider, store, team_tenant, target):
    before = store.get("t1")
    with pytest.raises(ValidationError):
        reconciler.schedule_downgrade("t1", target)
    assert provider.calls == []
    assert store.get("t1") == before


def test_downgrade_requires_subscription(reconciler, make_tenant):
    make_tenant("t1", entitlement={"plan": Plan.PRO})
    with pytest.raises(ValidationError):
        reconciler.schedule_downgrade("t1", Plan.STARTER)


def test_downgrade_rejected_after_cancellation(reconciler, provider, make_tenant):
    make_tenant("t1", entitlement={
        "provider_customer_ref": "cus_1",
        "plan": Plan.TEAM,
        "status": SubscriptionStatus.CANCELED,
    })
    with pytest.raises(ValidationError):
        reconciler.schedule_downgrade("t1", Plan.STARTER)
    assert provider.calls == []


def test_downgrade_unknown_tenant(reconciler):
    with pytest.raises(NotFoundError):
        reconciler.schedule_downgrade("nope", Plan.STARTER)


def test_downgrade_provider_failure_leaves_state(reconciler, provider, store, team_tenant):
    provider.fail_on.add("update_subscription")
    before = store.get("t1")

    with pytest.raises(BillingActionError):
        reconciler.schedule_downgrade("t1", Plan.PRO)

    assert store.get("t1") == before
    assert store.list_history("t1") == []


def test_cancel_pending_downgrade(reconciler, provider, store, team_tenant):
    reconciler.schedule_downgrade("t1", Plan.STARTER)

    ent = reconciler.cancel_pending_downgrade("t1")

    assert provider.calls[-1] == ("update_subscription", "sub_team", False)
    assert ent.pending_downgrade_plan is None
    assert ent.cancel_at_period_end is False
    assert store.list_history("t1")[0].event_type == "downgrade_cancelled"


def test_cancel_pending_downgrade_without_one(reconciler, team_tenant):
    with pytest.raises(ValidationError):
        reconciler.cancel_pending_downgrade("t1")


# --- seats -----------------------------------------------------------------

def test_add_seats_creates_seat_item_with_full_quantity(reconciler, provider, store, team_tenant):
    change = reconciler.add_seats("t1", 2)

    assert ("create_subscription_item", "sub_team", SEAT_MONTHLY, 2) in provider.calls
    assert (change.seats_changed, change.extra_seats) == (2, 2)
    assert store.get("t1").extra_seats == 2

    reconciler.add_seats("t1", 1)
    seat_item = [i for i in provider.subscriptions["sub_team"].items if i.price_ref == SEAT_MONTHLY][0]
    assert seat_item.quantity == 3
    assert store.get("t1").extra_seats == 3
    history = store.list_history("t1")[0]
    assert (history.event_type, history.seats_before, history.seats_after) == ("seats_added", 2, 3)


def test_add_seats_annual_plan_uses_annual_seat_price(reconciler, provider, store, make_tenant):
    provider.add_subscription("cus_1", TEAM_ANNUAL, sub_id="sub_team")
    make_tenant("t1", entitlement={
        "provider_customer_ref": "cus_1",
        "provider_subscription_ref": "sub_team",
        "plan": Plan.TEAM,
        "billing_interval": BillingInterval.ANNUAL,
    })
    reconciler.add_seats("t1", 1)
    assert ("create_subscription_item", "sub_team", SEAT_ANNUAL, 1) in provider.calls


def test_add_seats_provider_failure_leaves_count(reconciler, provider, store, team_tenant):
    provider.fail_on.add("create_subscription_item")

    with pytest.raises(BillingActionError):
        reconciler.add_seats("t1", 2)

    assert store.get("t1").extra_seats == 0
    assert store.list_history("t1") == []


def test_add_seats_requires_team_plan(reconciler, provider, make_tenant):
    make_tenant("t1", entitlement={"plan": Plan.PRO, "provider_subscription_ref": "sub_pro"})
    with pytest.raises(ValidationError):
        reconciler.add_seats("t1", 1)
    assert provider.calls == []


def test_add_seats_rejects_non_positive(reconciler, team_tenant):
    with pytest.raises(ValidationError):
        reconciler.add_seats("t1", 0)


def test_add_seats_without_subscription_is_local(reconciler, provider, store, make_tenant):
    make_tenant("t1", entitlement={"plan": Plan.TEAM})
    change = reconciler.add_seats("t1", 3)
    assert change.extra_seats == 3
    assert provider.calls == []


def test_remove_seats_updates_then_deletes_item(reconciler, provider, store, team_tenant):
    reconciler.add_seats("t1", 3)

    change = reconciler.remove_seats("t1", 1)
    assert (change.seats_changed, change.extra_seats) == (1, 2)
    assert provider.calls[-1][0] == "update_subscription_item"
    assert provider.calls[-1][2] == 2

    change = reconciler.remove_seats("t1", 5)
    assert (change.seats_changed, change.extra_seats) == (2, 0)
    assert provider.calls[-1][0] == "delete_subscription_item"
    assert store.get("t1").extra_seats == 0
    assert store.list_history("t1")[0].event_type == "seats_removed"


def test_remove_seats_without_seat_item_changes_nothing(reconciler, provider, store, team_tenant):
    store.upsert("t1", {"extra_seats": 2})

    change = reconciler.remove_seats("t1", 1)

    assert change.seats_changed == 0
    assert store.get("t1").extra_seats == 2
    assert "update_subscription_item" not in provider.call_names()


def test_remove_seats_provider_failure_leaves_count(reconciler, provider, store, team_tenant):
    reconciler.add_seats("t1", 2)
    provider.fail_on.add("update_subscription_item")

    with pytest.raises(BillingActionError):
        reconciler.remove_seats("t1", 1)

    assert store.get("t1").extra_seats == 2


def test_seat_item_found_by_product_name(reconciler, provider, store, make_tenant):
    legacy_item = SubscriptionItem(id="si_legacy", price_ref="price_old_seat", quantity=2, product_name="Extra Seat")
    provider.add_subscription("cus_1", TEAM_MONTHLY, sub_id="sub_team", extra_items=[legacy_item])
    make_tenant("t1", entitlement={
        "provider_customer_ref": "cus_1",
        "provider_subscription_ref": "sub_team",
        "plan": Plan.TEAM,
        "extra_seats": 2,
    })

    reconciler.add_seats("t1", 1)

    assert ("update_subscription_item", "si_legacy", 3) in provider.calls


def test_adjust_seats_after_user_removal(reconciler, directory, store, team_tenant):
    reconciler.add_seats("t1", 3)
    # admin + 6 members = 7 users, 1 extra seat needed
    for n in range(6):
        directory.create_user("t1", f"member{n}@t1.test")

    change = reconciler.adjust_seats_after_user_removal("t1")

    assert change.seats_changed == 2
    assert store.get("t1").extra_seats == 1
    assert reconciler.adjust_seats_after_user_removal("t1") is None


# --- cancel / reactivate ------------------------------------------------------

def test_cancel_at_period_end(reconciler, provider, store, team_tenant):
    ent = reconciler.cancel_subscription("t1")
    assert provider.calls[-1] == ("update_subscription", "sub_team", True)
    assert ent.cancel_at_period_end is True
    assert ent.status == SubscriptionStatus.ACTIVE


def test_cancel_immediately_waits_for_deletion_event(reconciler, provider, store, team_tenant):
    ent = reconciler.cancel_subscription("t1", at_period_end=False)
    assert provider.calls[-1] == ("cancel_subscription", "sub_team", False)
    assert ent.status == SubscriptionStatus.ACTIVE
    assert store.get("t1").provider_subscription_ref == "sub_team"


def test_reactivate_clears_cancellation(reconciler, provider, store, team_tenant):
    reconciler.schedule_downgrade("t1", Plan.PRO)
    ent = reconciler.reactivate_subscription("t1")
    assert ent.cancel_at_period_end is False
    assert ent.pending_downgrade_plan is None


def test_cancel_without_subscription(reconciler, make_tenant):
    make_tenant("t1", entitlement={"plan": Plan.STARTER})
    with pytest.raises(ValidationError):
        reconciler.cancel_subscription("t1")


# --- checkout / portal ------------------------------------------------------

def test_start_checkout_creates_customer_and_tags_tenant(reconciler, provider, store, make_tenant):
    make_tenant("t1")

    url = reconciler.start_checkout("t1", Plan.PRO, BillingInterval.ANNUAL, "https://ok", "https://cancel")

    assert url.startswith("https://checkout.test/")
    assert provider.calls[0] == ("create_customer", "admin@t1.test")
    checkout = provider.calls[-1]
    assert checkout[1] == PRO_ANNUAL
    assert checkout[3] == {"tenant_id": "t1"}
    assert store.get("t1").provider_customer_ref == checkout[2]


def test_start_checkout_same_plan_conflict(reconciler, store, make_tenant):
    make_tenant("t1", entitlement={
        "provider_customer_ref": "cus_1",
        "provider_subscription_ref": "sub_1",
        "provider_price_ref": PRO_MONTHLY,
        "plan": Plan.PRO,
    })
    with pytest.raises(ConflictError):
        reconciler.start_checkout("t1", Plan.PRO, BillingInterval.MONTHLY, "https://ok", "https://cancel")


def test_start_checkout_unpriced_plan(reconciler, make_tenant):
    make_tenant("t1")
    with pytest.raises(ValidationError):
        reconciler.start_checkout("t1", Plan.STARTER, BillingInterval.ANNUAL, "https://ok", "https://cancel")


def test_guest_checkout_tagged_for_provisioning(reconciler, provider):
    reconciler.start_guest_checkout(Plan.TEAM, BillingInterval.MONTHLY, "https://ok", "https://cancel", trial_days=14)
    name, price_ref, customer_ref, metadata, trial_days = provider.calls[-1]
    assert (price_ref, customer_ref, trial_days) == (TEAM_MONTHLY, None, 14)
    assert metadata == {"flow": "new_customer_purchase"}


def test_portal_requires_customer(reconciler, make_tenant):
    make_tenant("t1")
    with pytest.raises(NotFoundError):
        reconciler.start_portal("t1", "https://back")


# --- sync ------------------------------------------------------------------

def test_sync_prefers_base_plan_with_latest_period(reconciler, provider, store, make_tenant):
    make_tenant("t1", entitlement={"provider_customer_ref": "cus_1", "plan": Plan.STARTER})
    provider.add_subscription("cus_1", PRO_MONTHLY, sub_id="sub_pro", status="canceled")
    provider.add_subscription("cus_1", SEAT_MONTHLY, sub_id="sub_seat")
    provider.add_subscription("cus_1", TEAM_MONTHLY, sub_id="sub_team")

    result = reconciler.sync_from_provider("t1")

    assert result.subscription_ref == "sub_team"
    assert result.plan == Plan.TEAM
    assert store.get("t1").provider_subscription_ref == "sub_team"


def test_sync_without_live_subscription_keeps_plan(reconciler, provider, store, make_tenant):
    make_tenant("t1", entitlement={"provider_customer_ref": "cus_1", "plan": Plan.PRO})
    provider.add_subscription("cus_1", PRO_MONTHLY, status="canceled")

    result = reconciler.sync_from_provider("t1")

    assert result.status == "no_active_subscription"
    assert store.get("t1").plan == Plan.PRO


def test_sync_provider_failure(reconciler, provider, make_tenant):
    make_tenant("t1", entitlement={"provider_customer_ref": "cus_1"})
    provider.fail_on.add("list_subscriptions")
    with pytest.raises(BillingActionError):
        reconciler.sync_from_provider("t1")


# --- payments ----------------------------------------------------------------

def _invoice(**overrides):
    fields = dict(id="in_1", customer_ref="cus_1", subscription_ref="sub_team", amount_paid=2900,
                  amount_due=2900, currency="usd", failure_message="Your card was declined.")
    fields.update(overrides)
    return ProviderInvoice(**fields)


def test_payment_failure_sets_past_due_with_grace_deadline(reconciler, store, team_tenant):
    reconciler.dispatch(InvoicePaymentFailed("evt_1", _invoice()))

    ent = store.get("t1")
    assert ent.status == SubscriptionStatus.PAST_DUE
    assert ent.payment_failed_at == FIXED_NOW
    assert ent.plan == Plan.TEAM

    with get_db_session() as session:
        row = session.execute(select(payment_failures)).one()
    assert row.failure_reason == "Your card was declined."
    assert row.amount_cents == 2900
    assert row.grace_period_ends_at.replace(tzinfo=None) == (FIXED_NOW + timedelta(days=30)).replace(tzinfo=None)
    assert store.list_history("t1")[0].description == "Payment of $29.00 failed"


def test_payment_success_recovers_past_due(reconciler, store, team_tenant):
    reconciler.dispatch(InvoicePaymentFailed("evt_1", _invoice()))
    reconciler.dispatch(InvoicePaymentSucceeded("evt_2", _invoice(id="in_2")))

    ent = store.get("t1")
    assert ent.status == SubscriptionStatus.ACTIVE
    assert ent.payment_failed_at is None
    entry = store.list_history("t1")[0]
    assert entry.description == "Payment of $29.00 succeeded"
    assert entry.provider_invoice_ref == "in_2"


def test_payment_for_unknown_customer_is_ignored(reconciler, store):
    reconciler.dispatch(InvoicePaymentFailed("evt_1", _invoice(customer_ref="cus_unknown")))
    assert store.list_with_customer_ref() == []
