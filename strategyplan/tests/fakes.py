"""In-memory stand-ins for the payments provider and the e-mail sender."""
import itertools
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from strategyplan.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    ProviderSubscription,
    SubscriptionItem,
)
from strategyplan.features.email.service import EmailDeliveryError, EmailMessage

VALID_SIGNATURE = "t=1,v1=valid"
PERIOD_START = datetime(2026, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 2, 1, tzinfo=timezone.utc)
FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

STARTER_MONTHLY = "price_starter_m"
PRO_MONTHLY = "price_pro_m"
PRO_ANNUAL = "price_pro_y"
TEAM_MONTHLY = "price_team_m"
TEAM_ANNUAL = "price_team_y"
SEAT_MONTHLY = "price_seat_m"
SEAT_ANNUAL = "price_seat_y"


class FakeBillingProvider:
    """
    Keeps subscriptions in a dict and records every call.

    Put a method name in `fail_on` to make that call raise BillingProviderError.
    """

    def __init__(self):
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.calls: List[tuple] = []
        self.fail_on: Set[str] = set()
        self._ids = itertools.count(1)

    def _call(self, name: str, *args):
        self.calls.append((name,) + args)
        if name in self.fail_on:
            raise BillingProviderError(f"{name} failed")

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def _next(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def add_subscription(
        self,
        customer_ref: str,
        price_ref: Optional[str],
        *,
        sub_id: Optional[str] = None,
        status: str = "active",
        metadata: Optional[Dict[str, str]] = None,
        extra_items: Optional[List[SubscriptionItem]] = None,
        period_end: datetime = PERIOD_END,
        cancel_at_period_end: bool = False,
        trial_end: Optional[datetime] = None,
    ) -> ProviderSubscription:
        sub_id = sub_id or self._next("sub")
        items = []
        if price_ref:
            items.append(SubscriptionItem(id=self._next("si"), price_ref=price_ref))
        items.extend(extra_items or [])
        sub = ProviderSubscription(
            id=sub_id,
            customer_ref=customer_ref,
            status=status,
            items=items,
            metadata=dict(metadata or {}),
            current_period_start=PERIOD_START,
            current_period_end=period_end,
            trial_end=trial_end,
            cancel_at_period_end=cancel_at_period_end,
        )
        self.subscriptions[sub_id] = sub
        return sub

    def _find_item(self, item_ref: str):
        for sub in self.subscriptions.values():
            for item in sub.items:
                if item.id == item_ref:
                    return sub, item
        raise BillingProviderError(f"No such subscription item: {item_ref}")

    def create_customer(self, email, name=None, metadata=None):
        self._call("create_customer", email)
        return self._next("cus")

    def create_checkout_session(self, price_ref, success_url, cancel_url, customer_ref=None, metadata=None, trial_days=None):
        self._call("create_checkout_session", price_ref, customer_ref, dict(metadata or {}), trial_days)
        return f"https://checkout.test/{self._next('cs')}"

    def create_portal_session(self, customer_ref, return_url):
        self._call("create_portal_session", customer_ref)
        return f"https://portal.test/{customer_ref}"

    def retrieve_subscription(self, subscription_ref):
        self._call("retrieve_subscription", subscription_ref)
        if subscription_ref not in self.subscriptions:
            raise BillingProviderError(f"No such subscription: {subscription_ref}")
        return self.subscriptions[subscription_ref]

    def list_subscriptions(self, customer_ref, status="all"):
        self._call("list_subscriptions", customer_ref, status)
        return [
            sub for sub in self.subscriptions.values()
            if sub.customer_ref == customer_ref and (status == "all" or sub.status == status)
        ]

    def update_subscription(self, subscription_ref, cancel_at_period_end):
        self._call("update_subscription", subscription_ref, cancel_at_period_end)
        sub = replace(self.subscriptions[subscription_ref], cancel_at_period_end=cancel_at_period_end)
        self.subscriptions[subscription_ref] = sub
        return sub

    def cancel_subscription(self, subscription_ref, prorate=False):
        self._call("cancel_subscription", subscription_ref, prorate)
        self.subscriptions[subscription_ref] = replace(self.subscriptions[subscription_ref], status="canceled")

    def create_subscription(self, customer_ref, price_ref, metadata=None):
        self._call("create_subscription", customer_ref, price_ref, dict(metadata or {}))
        return self.add_subscription(
            customer_ref,
            price_ref,
            metadata=metadata,
            period_end=PERIOD_END + timedelta(days=31),
        )

    def create_subscription_item(self, subscription_ref, price_ref, quantity):
        self._call("create_subscription_item", subscription_ref, price_ref, quantity)
        sub = self.subscriptions[subscription_ref]
        item = SubscriptionItem(id=self._next("si"), price_ref=price_ref, quantity=quantity)
        self.subscriptions[subscription_ref] = replace(sub, items=sub.items + [item])
        return item

    def update_subscription_item(self, item_ref, quantity):
        self._call("update_subscription_item", item_ref, quantity)
        sub, item = self._find_item(item_ref)
        items = [replace(i, quantity=quantity) if i.id == item_ref else i for i in sub.items]
        self.subscriptions[sub.id] = replace(sub, items=items)

    def delete_subscription_item(self, item_ref):
        self._call("delete_subscription_item", item_ref)
        sub, _ = self._find_item(item_ref)
        self.subscriptions[sub.id] = replace(sub, items=[i for i in sub.items if i.id != item_ref])

    def construct_event(self, body, signature):
        if signature != VALID_SIGNATURE:
            raise BillingWebhookError("Invalid signature")
        try:
            return json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")


class RecordingEmailSender:
    def __init__(self, fail: bool = False):
        self.sent: List[EmailMessage] = []
        self.fail = fail

    def send(self, message: EmailMessage) -> None:
        if self.fail:
            raise EmailDeliveryError("delivery failed")
        self.sent.append(message)


def _epoch(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp()) if value else None


def subscription_object(
    sub_id: str,
    customer_ref: str,
    price_ref: Optional[str],
    *,
    status: str = "active",
    metadata: Optional[Dict[str, str]] = None,
    cancel_at_period_end: bool = False,
    period_end: datetime = PERIOD_END,
) -> Dict[str, Any]:
    """Subscription payload shaped like the provider's webhook JSON."""
    items = []
    if price_ref:
        items.append({"id": f"si_{sub_id}", "quantity": 1, "price": {"id": price_ref}})
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer_ref,
        "status": status,
        "metadata": metadata or {},
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_start": _epoch(PERIOD_START),
        "current_period_end": _epoch(period_end),
        "items": {"data": items},
    }


def event_body(event_id: str, event_type: str, obj: Dict[str, Any]) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()
