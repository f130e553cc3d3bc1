"""
Webhook event variants.

The provider sends many event types; only these are acted on. Anything else
becomes UnhandledEvent and is dispatched to an explicit no-op.
"""
from dataclasses import dataclass
from typing import Any, Mapping, Union

from strategyplan.features.billing.provider import (
    BillingWebhookError,
    ProviderCheckoutSession,
    ProviderInvoice,
    ProviderSubscription,
    parse_checkout_session,
    parse_invoice,
    parse_subscription,
)


@dataclass(frozen=True)
class CheckoutSessionCompleted:
    event_id: str
    session: ProviderCheckoutSession


@dataclass(frozen=True)
class SubscriptionChanged:
    event_id: str
    kind: str  # "created" | "updated"
    subscription: ProviderSubscription


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    subscription: ProviderSubscription


@dataclass(frozen=True)
class TrialWillEnd:
    event_id: str
    subscription: ProviderSubscription


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    event_id: str
    invoice: ProviderInvoice


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    invoice: ProviderInvoice


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    event_type: str


BillingEvent = Union[
    CheckoutSessionCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    TrialWillEnd,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    UnhandledEvent,
]


def parse_event(event: Mapping[str, Any]) -> BillingEvent:
    """
    Parse a verified provider event into its variant.

    Raises:
        BillingWebhookError: If the envelope or a handled payload is malformed
    """
    try:
        event_id = event["id"]
        event_type = event["type"]
        data = event["data"]["object"]
    except (KeyError, TypeError) as e:
        raise BillingWebhookError(f"Malformed event envelope: {e}")

    try:
        if event_type == "checkout.session.completed":
            return CheckoutSessionCompleted(event_id, parse_checkout_session(data))
        if event_type == "customer.subscription.created":
            return SubscriptionChanged(event_id, "created", parse_subscription(data))
        if event_type == "customer.subscription.updated":
            return SubscriptionChanged(event_id, "updated", parse_subscription(data))
        if event_type == "customer.subscription.deleted":
            return SubscriptionDeleted(event_id, parse_subscription(data))
        if event_type == "customer.subscription.trial_will_end":
            return TrialWillEnd(event_id, parse_subscription(data))
        if event_type == "invoice.payment_succeeded":
            return InvoicePaymentSucceeded(event_id, parse_invoice(data))
        if event_type == "invoice.payment_failed":
            return InvoicePaymentFailed(event_id, parse_invoice(data))
    except (KeyError, TypeError, AttributeError) as e:
        raise BillingWebhookError(f"Malformed {event_type} payload: {e}")

    return UnhandledEvent(event_id, event_type)
