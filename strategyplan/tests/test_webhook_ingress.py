"""
Webhook ingress: signature check, idempotent claim, dispatch.
"""
import hashlib
import logging
from unittest.mock import patch

import pytest

from strategyplan.features.billing.events import (
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    SubscriptionChanged,
    UnhandledEvent,
    parse_event,
)
from strategyplan.features.billing.provider import BillingWebhookError
from strategyplan.models.billing import Plan, SubscriptionStatus
from strategyplan.tests.fakes import (
    PERIOD_END,
    PRO_MONTHLY,
    TEAM_MONTHLY,
    VALID_SIGNATURE,
    event_body,
    subscription_object,
)


def test_invalid_signature_rejected_before_claim(ingress, ledger):
    body = event_body("evt_1", "customer.created", {"id": "cus_1"})
    with pytest.raises(BillingWebhookError):
        ingress.handle(body, "t=1,v1=forged")
    with pytest.raises(BillingWebhookError):
        ingress.handle(body, None)
    assert ledger.get("evt_1") is None


def test_malformed_envelope_rejected(ingress):
    with pytest.raises(BillingWebhookError):
        ingress.handle(b'{"id": "evt_1"}', VALID_SIGNATURE)
    with pytest.raises(BillingWebhookError):
        ingress.handle(b"not json", VALID_SIGNATURE)


def test_duplicate_delivery_processed_once(ingress, ledger, store, make_tenant):
    make_tenant("t1", entitlement={"provider_customer_ref": "cus_1"})
    body = event_body("evt_1", "customer.subscription.updated", subscription_object("sub_1", "cus_1", PRO_MONTHLY))

    first = ingress.handle(body, VALID_SIGNATURE)
    second = ingress.handle(body, VALID_SIGNATURE)

    assert (first.duplicate, first.handled) == (False, True)
    assert (second.duplicate, second.handled) == (True, False)
    assert len(store.list_history("t1")) == 1
    row = ledger.get("evt_1")
    assert row["handled"]
    assert row["payload_hash"] == hashlib.sha256(body).hexdigest()


def test_handler_failure_is_recorded_and_acknowledged(ingress, ledger, reconciler):
    body = event_body("evt_1", "customer.subscription.updated", subscription_object("sub_1", "cus_1", PRO_MONTHLY))

    with patch.object(reconciler, "dispatch", side_effect=RuntimeError("db exploded")):
        result = ingress.handle(body, VALID_SIGNATURE)

    assert result.handled is False
    assert result.error == "db exploded"
    row = ledger.get("evt_1")
    assert row["error"] == "RuntimeError: db exploded"
    assert not row["handled"]
    # a provider retry is turned away by the claim
    assert ingress.handle(body, VALID_SIGNATURE).duplicate is True


def test_duplicate_is_logged_with_event_fields(ingress, caplog):
    body = event_body("evt_1", "customer.created", {"id": "cus_1"})
    ingress.handle(body, VALID_SIGNATURE)
    with caplog.at_level(logging.INFO, logger="strategyplan"):
        ingress.handle(body, VALID_SIGNATURE)
    records = [r for r in caplog.records if r.getMessage() == "billing.webhook_duplicate"]
    assert records
    assert (records[0].event_id, records[0].event_type) == ("evt_1", "customer.created")


def test_unhandled_type_acknowledged(ingress, ledger):
    result = ingress.handle(event_body("evt_1", "customer.created", {"id": "cus_1"}), VALID_SIGNATURE)
    assert result.handled is True
    assert ledger.get("evt_1")["handled"]


def test_checkout_to_provisioned_tenant(ingress, provider, store, directory, mailer):
    provider.add_subscription("cus_new", TEAM_MONTHLY, sub_id="sub_new")
    session = {
        "id": "cs_1",
        "object": "checkout.session",
        "customer": "cus_new",
        "subscription": "sub_new",
        "customer_details": {"email": "founder@acme.test", "name": "Acme Founder"},
        "metadata": {"flow": "new_customer_purchase"},
    }
    body = event_body("evt_checkout", "checkout.session.completed", session)

    ingress.handle(body, VALID_SIGNATURE)
    ingress.handle(body, VALID_SIGNATURE)

    admin = directory.find_user_by_email("founder@acme.test")
    assert admin is not None
    ent = store.get(admin.tenant_id)
    assert ent.plan == Plan.TEAM
    assert ent.status == SubscriptionStatus.ACTIVE
    assert len(mailer.sent) == 1

    # the subscription.created event that follows checkout lands on the same tenant
    created = event_body(
        "evt_created",
        "customer.subscription.created",
        subscription_object("sub_new", "cus_new", TEAM_MONTHLY),
    )
    ingress.handle(created, VALID_SIGNATURE)
    assert store.get(admin.tenant_id).provider_subscription_ref == "sub_new"


# --- event parsing -------------------------------------------------------------

def _envelope(event_type, obj):
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


def test_parse_subscription_event():
    obj = subscription_object("sub_1", "cus_1", PRO_MONTHLY, metadata={"tenant_id": "t1"})
    event = parse_event(_envelope("customer.subscription.updated", obj))
    assert isinstance(event, SubscriptionChanged)
    assert event.kind == "updated"
    assert event.subscription.primary_price_ref == PRO_MONTHLY
    assert event.subscription.metadata == {"tenant_id": "t1"}
    assert event.subscription.current_period_end == PERIOD_END


def test_parse_subscription_period_from_items():
    obj = subscription_object("sub_1", {"id": "cus_1"}, PRO_MONTHLY)
    obj.pop("current_period_end")
    obj["items"]["data"][0]["current_period_end"] = int(PERIOD_END.timestamp())
    event = parse_event(_envelope("customer.subscription.updated", obj))
    assert event.subscription.customer_ref == "cus_1"
    assert event.subscription.current_period_end == PERIOD_END


def test_parse_invoice_with_nested_subscription():
    obj = {
        "id": "in_1",
        "customer": "cus_1",
        "amount_due": 1500,
        "currency": "usd",
        "parent": {"subscription_details": {"subscription": "sub_1"}},
        "last_finalization_error": {"message": "Card declined"},
    }
    event = parse_event(_envelope("invoice.payment_failed", obj))
    assert isinstance(event, InvoicePaymentFailed)
    assert event.invoice.subscription_ref == "sub_1"
    assert event.invoice.failure_message == "Card declined"


def test_parse_checkout_email_fallback():
    obj = {"id": "cs_1", "customer": "cus_1", "subscription": None, "customer_email": "a@b.test"}
    event = parse_event(_envelope("checkout.session.completed", obj))
    assert isinstance(event, CheckoutSessionCompleted)
    assert event.session.email == "a@b.test"


def test_parse_unknown_type():
    assert parse_event(_envelope("charge.refunded", {"id": "ch_1"})) == UnhandledEvent("evt_1", "charge.refunded")


def test_parse_malformed_subscription():
    with pytest.raises(BillingWebhookError):
        parse_event(_envelope("customer.subscription.deleted", {"status": "canceled"}))
