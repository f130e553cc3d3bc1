"""
Stripe billing provider implementation.

Implements the BillingProvider protocol using the Stripe API.
Handles webhook signature verification; payload parsing lives in provider.py.
"""
from typing import Dict, Any, List, Optional
import stripe

from strategyplan.core.config import settings
from strategyplan.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    ProviderSubscription,
    SubscriptionItem,
    parse_subscription,
    parse_subscription_item,
)

_SUBSCRIPTION_EXPAND = ["items.data.price.product"]


def _as_dict(obj) -> Dict[str, Any]:
    return obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET setting)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def create_customer(self, email: str, name: Optional[str] = None, metadata: Optional[Dict[str, str]] = None) -> str:
        try:
            customer_data: Dict[str, Any] = {"email": email, "metadata": metadata or {}}
            if name:
                customer_data["name"] = name
            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        price_ref: str,
        success_url: str,
        cancel_url: str,
        customer_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        trial_days: Optional[int] = None,
    ) -> str:
        subscription_data: Dict[str, Any] = {"metadata": metadata or {}}
        if trial_days and trial_days > 0:
            subscription_data["trial_period_days"] = trial_days

        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": [{"price": price_ref, "quantity": 1}],
            "mode": "subscription",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
            "subscription_data": subscription_data,
        }
        if customer_ref:
            params["customer"] = customer_ref

        try:
            session = stripe.checkout.Session.create(**params)
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_ref,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")

    def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        try:
            sub = stripe.Subscription.retrieve(subscription_ref, expand=_SUBSCRIPTION_EXPAND)
            return parse_subscription(_as_dict(sub))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}")

    def list_subscriptions(self, customer_ref: str, status: str = "all") -> List[ProviderSubscription]:
        try:
            subs = stripe.Subscription.list(customer=customer_ref, status=status, limit=100)
            return [parse_subscription(_as_dict(sub)) for sub in subs.data]
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription listing failed: {e}")

    def update_subscription(self, subscription_ref: str, cancel_at_period_end: bool) -> ProviderSubscription:
        try:
            sub = stripe.Subscription.modify(subscription_ref, cancel_at_period_end=cancel_at_period_end)
            return parse_subscription(_as_dict(sub))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription update failed: {e}")

    def cancel_subscription(self, subscription_ref: str, prorate: bool = False) -> None:
        try:
            stripe.Subscription.cancel(subscription_ref, prorate=prorate)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancel failed: {e}")

    def create_subscription(self, customer_ref: str, price_ref: str, metadata: Optional[Dict[str, str]] = None) -> ProviderSubscription:
        try:
            sub = stripe.Subscription.create(
                customer=customer_ref,
                items=[{"price": price_ref}],
                metadata=metadata or {},
            )
            return parse_subscription(_as_dict(sub))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription creation failed: {e}")

    def create_subscription_item(self, subscription_ref: str, price_ref: str, quantity: int) -> SubscriptionItem:
        try:
            item = stripe.SubscriptionItem.create(
                subscription=subscription_ref,
                price=price_ref,
                quantity=quantity,
                proration_behavior="create_prorations",
            )
            return parse_subscription_item(_as_dict(item))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe seat item creation failed: {e}")

    def update_subscription_item(self, item_ref: str, quantity: int) -> None:
        try:
            stripe.SubscriptionItem.modify(
                item_ref,
                quantity=quantity,
                proration_behavior="create_prorations",
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe seat item update failed: {e}")

    def delete_subscription_item(self, item_ref: str) -> None:
        try:
            stripe.SubscriptionItem.delete(item_ref, proration_behavior="create_prorations")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe seat item removal failed: {e}")

    def construct_event(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify Stripe webhook signature and return the event payload."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return _as_dict(event)
