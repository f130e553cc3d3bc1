"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.) plus the plain
value types that cross it. Provider payloads are normalized here so the
reconciler never handles raw SDK objects.
"""
from typing import Protocol, Dict, Any, List, Mapping, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook verification and parsing errors."""
    pass


@dataclass(frozen=True)
class SubscriptionItem:
    id: str
    price_ref: Optional[str]
    quantity: int = 1
    product_name: Optional[str] = None
    interval: Optional[str] = None  # provider's recurring interval: "month" / "year"
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


@dataclass(frozen=True)
class ProviderSubscription:
    id: str
    customer_ref: Optional[str]
    status: str
    items: List[SubscriptionItem] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @property
    def primary_item(self) -> Optional[SubscriptionItem]:
        return self.items[0] if self.items else None

    @property
    def primary_price_ref(self) -> Optional[str]:
        item = self.primary_item
        return item.price_ref if item else None


@dataclass(frozen=True)
class ProviderInvoice:
    id: Optional[str]
    customer_ref: Optional[str]
    subscription_ref: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: Optional[str] = None
    failure_message: Optional[str] = None


@dataclass(frozen=True)
class ProviderCheckoutSession:
    id: str
    customer_ref: Optional[str]
    subscription_ref: Optional[str]
    email: Optional[str]
    name: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


def _timestamp(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, (int, float)) or value <= 0:
        return None
    return datetime.fromtimestamp(value, timezone.utc)


def _ref(value: Any) -> Optional[str]:
    """Provider refs may arrive as an id string or as an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return value.get("id")
    return None


def parse_subscription_item(data: Mapping[str, Any]) -> SubscriptionItem:
    price = data.get("price") or {}
    product = price.get("product")
    product_name = product.get("name") if isinstance(product, Mapping) else None
    recurring = price.get("recurring") or {}
    return SubscriptionItem(
        id=data.get("id", ""),
        price_ref=price.get("id"),
        quantity=data.get("quantity") or 1,
        product_name=product_name,
        interval=recurring.get("interval"),
        current_period_start=_timestamp(data.get("current_period_start")),
        current_period_end=_timestamp(data.get("current_period_end")),
    )


def parse_subscription(data: Mapping[str, Any]) -> ProviderSubscription:
    items = [parse_subscription_item(item) for item in (data.get("items") or {}).get("data", [])]

    # Newer API versions carry the period on the items rather than the subscription
    period_start = _timestamp(data.get("current_period_start"))
    period_end = _timestamp(data.get("current_period_end"))
    if items and period_start is None:
        period_start = items[0].current_period_start
    if items and period_end is None:
        period_end = items[0].current_period_end

    return ProviderSubscription(
        id=data["id"],
        customer_ref=_ref(data.get("customer")),
        status=data.get("status") or "active",
        items=items,
        metadata=dict(data.get("metadata") or {}),
        current_period_start=period_start,
        current_period_end=period_end,
        trial_end=_timestamp(data.get("trial_end")),
        cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
    )


def parse_invoice(data: Mapping[str, Any]) -> ProviderInvoice:
    subscription_ref = _ref(data.get("subscription"))
    if subscription_ref is None:
        details = ((data.get("parent") or {}).get("subscription_details") or {})
        subscription_ref = _ref(details.get("subscription"))
    error = data.get("last_finalization_error") or {}
    return ProviderInvoice(
        id=data.get("id"),
        customer_ref=_ref(data.get("customer")),
        subscription_ref=subscription_ref,
        amount_paid=data.get("amount_paid") or 0,
        amount_due=data.get("amount_due") or 0,
        currency=data.get("currency"),
        failure_message=error.get("message"),
    )


def parse_checkout_session(data: Mapping[str, Any]) -> ProviderCheckoutSession:
    details = data.get("customer_details") or {}
    return ProviderCheckoutSession(
        id=data["id"],
        customer_ref=_ref(data.get("customer")),
        subscription_ref=_ref(data.get("subscription")),
        email=details.get("email") or data.get("customer_email"),
        name=details.get("name"),
        metadata=dict(data.get("metadata") or {}),
    )


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Every method is a single round trip. Failures raise BillingProviderError;
    nothing is retried internally.
    """

    def create_customer(self, email: str, name: Optional[str] = None, metadata: Optional[Dict[str, str]] = None) -> str:
        """Create a billing customer and return its provider id."""
        ...

    def create_checkout_session(
        self,
        price_ref: str,
        success_url: str,
        cancel_url: str,
        customer_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        trial_days: Optional[int] = None,
    ) -> str:
        """
        Create a subscription checkout session.

        Without a customer_ref the provider collects the email itself (guest
        purchase). Returns the hosted checkout URL.
        """
        ...

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        """Create a self-service portal session and return its URL."""
        ...

    def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        ...

    def list_subscriptions(self, customer_ref: str, status: str = "all") -> List[ProviderSubscription]:
        ...

    def update_subscription(self, subscription_ref: str, cancel_at_period_end: bool) -> ProviderSubscription:
        ...

    def cancel_subscription(self, subscription_ref: str, prorate: bool = False) -> None:
        ...

    def create_subscription(self, customer_ref: str, price_ref: str, metadata: Optional[Dict[str, str]] = None) -> ProviderSubscription:
        ...

    def create_subscription_item(self, subscription_ref: str, price_ref: str, quantity: int) -> SubscriptionItem:
        ...

    def update_subscription_item(self, item_ref: str, quantity: int) -> None:
        ...

    def delete_subscription_item(self, item_ref: str) -> None:
        ...

    def construct_event(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify the signature over the raw body and return the event payload.

        Raises:
            BillingWebhookError: If the signature is missing or invalid
        """
        ...
