"""
Billing reconciler.

Keeps each tenant's entitlement consistent with its subscription at the
payments provider. Two kinds of input arrive here:

- provider events (via webhook ingress), possibly duplicated or out of order
- user-initiated actions (checkout, downgrade, seats, cancel)

Error policy differs between the two. For user actions the provider call
comes first and a failure aborts the local write (BillingActionError). For
provider events the primary transition is applied first; follow-up provider
calls (stacked-subscription cleanup, downgrade subscription creation) are
logged on failure and never roll the primary transition back.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError

from strategyplan.core.errors import BillingActionError, ConflictError, NotFoundError, ValidationError
from strategyplan.features.billing.catalog import PlanCatalog, limits_for
from strategyplan.features.billing.events import (
    BillingEvent,
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
    TrialWillEnd,
    UnhandledEvent,
)
from strategyplan.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    ProviderSubscription,
    SubscriptionItem,
)
from strategyplan.features.billing.store import EntitlementStore
from strategyplan.features.email.service import EmailDeliveryError, EmailSender, render_welcome_email
from strategyplan.features.tenants.service import TenantDirectory, generate_temp_password, hash_password
from strategyplan.models.billing import BillingInterval, Entitlement, Plan, SubscriptionStatus
from strategyplan.models.lifecycle import (
    Active,
    CancelPending,
    Canceled,
    DowngradePending,
    PastDue,
    Unprovisioned,
    is_lower_tier,
    lifecycle_of,
    status_from_provider,
)

logger = logging.getLogger(__name__)

LIVE_PROVIDER_STATUSES = ("active", "trialing")
SYNCABLE_PROVIDER_STATUSES = ("active", "trialing", "past_due")
GUEST_CHECKOUT_FLOW = "new_customer_purchase"


@dataclass(frozen=True)
class CheckoutOutcome:
    tenant_id: Optional[str]
    is_new_customer: bool


@dataclass(frozen=True)
class SeatChange:
    seats_changed: int
    extra_seats: int


@dataclass(frozen=True)
class SyncResult:
    plan: Plan
    status: str
    subscription_ref: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dollars(cents: Optional[int]) -> str:
    return f"${(cents or 0) / 100:.2f}"


class Reconciler:
    """Entitlement state machine. Owns every write to the entitlement store."""

    def __init__(
        self,
        provider: BillingProvider,
        catalog: PlanCatalog,
        store: EntitlementStore,
        directory: TenantDirectory,
        mailer: EmailSender,
        *,
        grace_period_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.provider = provider
        self.catalog = catalog
        self.store = store
        self.directory = directory
        self.mailer = mailer
        self.grace_period_days = grace_period_days
        self._now = clock or _utcnow
        self._handlers: Dict[type, Callable] = {
            CheckoutSessionCompleted: self.handle_checkout_completed,
            SubscriptionChanged: self.handle_subscription_changed,
            SubscriptionDeleted: self.handle_subscription_deleted,
            TrialWillEnd: self.handle_trial_will_end,
            InvoicePaymentSucceeded: self.handle_payment_succeeded,
            InvoicePaymentFailed: self.handle_payment_failed,
            UnhandledEvent: self.handle_unhandled,
        }

    # ------------------------------------------------------------------
    # Provider events
    # ------------------------------------------------------------------

    def dispatch(self, event: BillingEvent) -> None:
        self._handlers[type(event)](event)

    def handle_unhandled(self, event: UnhandledEvent) -> None:
        logger.info("billing.event_ignored", extra={"event_id": event.event_id, "event_type": event.event_type})

    def handle_trial_will_end(self, event: TrialWillEnd) -> None:
        sub = event.subscription
        tenant_id = self._resolve_tenant(sub.metadata, sub.customer_ref)
        logger.info(
            "billing.trial_will_end",
            extra={"tenant_id": tenant_id, "subscription_ref": sub.id, "event_id": event.event_id},
        )

    def handle_subscription_changed(self, event: SubscriptionChanged) -> None:
        self.apply_subscription(event.subscription)

    def apply_subscription(self, sub: ProviderSubscription, tenant_id: Optional[str] = None) -> Optional[Entitlement]:
        """
        Mirror a provider subscription onto the tenant's entitlement.

        Plan and interval come from the primary line item. When that item is not
        a known base-plan price the tenant keeps its current plan.
        """
        tenant_id = tenant_id or self._resolve_tenant(sub.metadata, sub.customer_ref)
        if not tenant_id:
            logger.warning(
                "billing.tenant_not_found",
                extra={"subscription_ref": sub.id, "customer_ref": sub.customer_ref},
            )
            return None

        current = self.store.get(tenant_id)
        status = status_from_provider(sub.status)

        match = self.catalog.plan_for_price_ref(sub.primary_price_ref)

        # A canceled or add-on-only subscription that is not the tracked one never replaces it
        if self._is_stale(current, sub.id) and (status == SubscriptionStatus.CANCELED or match is None):
            logger.info(
                "billing.stale_subscription_ignored",
                extra={"tenant_id": tenant_id, "subscription_ref": sub.id},
            )
            return current

        if match is not None:
            plan, interval = match.plan, match.interval
        else:
            plan = current.plan if current else Plan.STARTER
            interval = current.billing_interval if current else BillingInterval.MONTHLY
            logger.info(
                "billing.plan_unresolved price=%s keeping=%s",
                sub.primary_price_ref,
                plan.value,
                extra={"tenant_id": tenant_id, "subscription_ref": sub.id},
            )

        if status == SubscriptionStatus.CANCELED:
            state = Canceled()
        elif status == SubscriptionStatus.PAST_DUE:
            state = PastDue()
        elif sub.cancel_at_period_end:
            state = CancelPending(subscription_ref=sub.id)
        else:
            state = Active(
                subscription_ref=sub.id,
                trialing=status == SubscriptionStatus.TRIALING,
                trial_ends_at=sub.trial_end,
            )

        fields = {
            "provider_subscription_ref": sub.id,
            "provider_price_ref": sub.primary_price_ref,
            "plan": plan,
            "status": status,
            "billing_interval": interval,
            "current_period_start": sub.current_period_start,
            "current_period_end": sub.current_period_end,
            "trial_ends_at": sub.trial_end,
            "cancel_at_period_end": sub.cancel_at_period_end,
            "pending_downgrade_plan": None,
            "payment_failed_at": None,
        }
        if sub.customer_ref:
            fields["provider_customer_ref"] = sub.customer_ref
        fields.update(state.as_fields())

        updated = self.store.upsert(tenant_id, fields)

        if (
            sub.customer_ref
            and status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
            and match is not None
        ):
            self._cancel_other_base_plan_subscriptions(tenant_id, sub.customer_ref, keep_ref=sub.id)

        self.store.append_history(
            tenant_id,
            "subscription_updated",
            f"Subscription updated to {plan.value} ({interval.value})",
            plan_before=current.plan.value if current else None,
            plan_after=plan.value,
        )
        logger.info(
            "billing.subscription_applied",
            extra={"tenant_id": tenant_id, "subscription_ref": sub.id, "status": status.value},
        )
        return updated

    def handle_subscription_deleted(self, event: SubscriptionDeleted) -> None:
        sub = event.subscription
        tenant_id = self._resolve_tenant(sub.metadata, sub.customer_ref)
        if not tenant_id:
            logger.warning(
                "billing.tenant_not_found",
                extra={"subscription_ref": sub.id, "customer_ref": sub.customer_ref, "event_id": event.event_id},
            )
            return

        current = self.store.get(tenant_id)
        if self._is_stale(current, sub.id):
            # e.g. the old plan canceled by the stacked-subscription sweep
            logger.info(
                "billing.stale_subscription_ignored",
                extra={"tenant_id": tenant_id, "subscription_ref": sub.id, "event_id": event.event_id},
            )
            return

        customer_ref = sub.customer_ref or (current.provider_customer_ref if current else None)
        if current is not None and current.pending_downgrade_plan is not None and customer_ref:
            try:
                self._complete_downgrade(tenant_id, current, customer_ref)
                return
            except BillingProviderError as e:
                logger.error(
                    "billing.downgrade_subscription_failed: %s",
                    e,
                    extra={"tenant_id": tenant_id, "subscription_ref": sub.id, "error_code": "provider_error"},
                )

        # seat items are billed on the deleted subscription and end with it
        fields = Canceled().as_fields()
        fields.update({"extra_seats": 0, "pending_extra_seats": None})
        self.store.upsert(tenant_id, fields)
        self.store.append_history(
            tenant_id,
            "subscription_canceled",
            "Subscription canceled",
            plan_before=current.plan.value if current else None,
            seats_before=current.extra_seats if current else None,
            seats_after=0,
        )
        logger.info("billing.subscription_canceled", extra={"tenant_id": tenant_id, "subscription_ref": sub.id})

    def handle_payment_succeeded(self, event: InvoicePaymentSucceeded) -> None:
        invoice = event.invoice
        entitlement = self.store.find_by_provider_customer_ref(invoice.customer_ref)
        if entitlement is None:
            logger.info("billing.payment_unknown_customer", extra={"customer_ref": invoice.customer_ref})
            return

        fields = {}
        if entitlement.status == SubscriptionStatus.PAST_DUE:
            fields["status"] = SubscriptionStatus.ACTIVE
        if entitlement.payment_failed_at is not None:
            fields["payment_failed_at"] = None
        if fields:
            self.store.upsert(entitlement.tenant_id, fields)

        self.store.append_history(
            entitlement.tenant_id,
            "payment_succeeded",
            f"Payment of {_dollars(invoice.amount_paid)} succeeded",
            amount_cents=invoice.amount_paid,
            currency=invoice.currency,
            provider_invoice_ref=invoice.id,
        )

    def handle_payment_failed(self, event: InvoicePaymentFailed) -> None:
        invoice = event.invoice
        entitlement = self.store.find_by_provider_customer_ref(invoice.customer_ref)
        if entitlement is None:
            logger.info("billing.payment_unknown_customer", extra={"customer_ref": invoice.customer_ref})
            return

        now = self._now()
        self.store.upsert(entitlement.tenant_id, PastDue(payment_failed_at=now).as_fields())
        self.store.record_payment_failure(
            entitlement.tenant_id,
            provider_invoice_ref=invoice.id,
            amount_cents=invoice.amount_due,
            currency=invoice.currency,
            failure_reason=invoice.failure_message or "Payment failed",
            grace_period_ends_at=now + timedelta(days=self.grace_period_days),
        )
        self.store.append_history(
            entitlement.tenant_id,
            "payment_failed",
            f"Payment of {_dollars(invoice.amount_due)} failed",
            amount_cents=invoice.amount_due,
            currency=invoice.currency,
            provider_invoice_ref=invoice.id,
        )
        logger.warning("billing.payment_failed", extra={"tenant_id": entitlement.tenant_id})

    def handle_checkout_completed(self, event: CheckoutSessionCompleted) -> CheckoutOutcome:
        """
        Link a completed checkout to a tenant, provisioning one if needed.

        Order of resolution: known customer ref, then existing user by email,
        then a brand-new tenant with an administrator on a one-time password.
        """
        session = event.session
        if not session.email:
            logger.warning("billing.checkout_without_email", extra={"event_id": event.event_id})
            return CheckoutOutcome(None, False)

        existing = self.store.find_by_provider_customer_ref(session.customer_ref)
        if existing is not None:
            return CheckoutOutcome(existing.tenant_id, False)

        user = self.directory.find_user_by_email(session.email)
        if user is not None:
            self._link_checkout(user.tenant_id, session.customer_ref, session.subscription_ref)
            return CheckoutOutcome(user.tenant_id, False)

        sub: Optional[ProviderSubscription] = None
        plan, interval = Plan.STARTER, BillingInterval.MONTHLY
        if session.subscription_ref:
            try:
                sub = self.provider.retrieve_subscription(session.subscription_ref)
                match = self.catalog.plan_for_price_ref(sub.primary_price_ref)
                if match is not None:
                    plan, interval = match.plan, match.interval
            except BillingProviderError:
                logger.warning(
                    "billing.checkout_subscription_unavailable",
                    extra={"subscription_ref": session.subscription_ref, "event_id": event.event_id},
                )

        temp_password = generate_temp_password()
        try:
            tenant, admin = self.directory.provision_tenant_with_admin(
                session.email, hash_password(temp_password), session.name
            )
        except IntegrityError:
            # Same email provisioned concurrently; fall back to linking
            user = self.directory.find_user_by_email(session.email)
            if user is None:
                raise
            self._link_checkout(user.tenant_id, session.customer_ref, session.subscription_ref)
            return CheckoutOutcome(user.tenant_id, False)

        fields = {
            "provider_customer_ref": session.customer_ref,
            "provider_subscription_ref": session.subscription_ref,
            "plan": plan,
            "status": SubscriptionStatus.ACTIVE,
            "billing_interval": interval,
        }
        if sub is not None:
            fields.update({
                "provider_price_ref": sub.primary_price_ref,
                "current_period_start": sub.current_period_start,
                "current_period_end": sub.current_period_end,
                "trial_ends_at": sub.trial_end,
            })
            if sub.status == "trialing":
                fields["status"] = SubscriptionStatus.TRIALING
        self.store.upsert(tenant.id, fields)
        self.store.append_history(
            tenant.id,
            "subscription_created",
            f"Account auto-provisioned via checkout. Plan: {plan.value} ({interval.value})",
            plan_after=plan.value,
        )

        try:
            self.mailer.send(
                render_welcome_email(admin.email, admin.first_name or "there", temp_password, plan.value.title())
            )
        except EmailDeliveryError:
            logger.error("billing.welcome_email_failed", extra={"tenant_id": tenant.id, "error_code": "email_failed"})

        logger.info("billing.tenant_auto_provisioned", extra={"tenant_id": tenant.id, "event_id": event.event_id})
        return CheckoutOutcome(tenant.id, True)

    # ------------------------------------------------------------------
    # User-initiated actions
    # ------------------------------------------------------------------

    def start_checkout(
        self,
        tenant_id: str,
        plan: Plan,
        interval: BillingInterval,
        success_url: str,
        cancel_url: str,
        trial_days: Optional[int] = None,
    ) -> str:
        tenant = self.directory.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("Organization not found")

        price_ref = self.catalog.price_ref_for(plan, interval)
        if not price_ref:
            raise ValidationError(f"No price configured for {plan.value} ({interval.value})")

        entitlement = self.store.get(tenant_id)
        if (
            entitlement is not None
            and entitlement.provider_subscription_ref
            and entitlement.provider_price_ref == price_ref
            and entitlement.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
        ):
            raise ConflictError("You already have an active subscription for this plan")

        customer_ref = entitlement.provider_customer_ref if entitlement else None
        if not customer_ref:
            admin = self.directory.find_admin(tenant_id)
            if admin is None:
                raise ValidationError("No admin email found for organization")
            try:
                customer_ref = self.provider.create_customer(admin.email, tenant.name, {"tenant_id": tenant_id})
            except BillingProviderError as e:
                raise BillingActionError(f"Could not start checkout: {e}")
            self.store.upsert(tenant_id, {"provider_customer_ref": customer_ref})

        try:
            return self.provider.create_checkout_session(
                price_ref,
                success_url,
                cancel_url,
                customer_ref=customer_ref,
                metadata={"tenant_id": tenant_id},
                trial_days=trial_days,
            )
        except BillingProviderError as e:
            raise BillingActionError(f"Could not start checkout: {e}")

    def start_guest_checkout(
        self,
        plan: Plan,
        interval: BillingInterval,
        success_url: str,
        cancel_url: str,
        trial_days: Optional[int] = None,
    ) -> str:
        """Checkout for someone without an account; the tenant is provisioned on completion."""
        price_ref = self.catalog.price_ref_for(plan, interval)
        if not price_ref:
            raise ValidationError(f"No price configured for {plan.value} ({interval.value})")
        try:
            return self.provider.create_checkout_session(
                price_ref,
                success_url,
                cancel_url,
                metadata={"flow": GUEST_CHECKOUT_FLOW},
                trial_days=trial_days,
            )
        except BillingProviderError as e:
            raise BillingActionError(f"Could not start checkout: {e}")

    def start_portal(self, tenant_id: str, return_url: str) -> str:
        entitlement = self.store.get(tenant_id)
        if entitlement is None or not entitlement.provider_customer_ref:
            raise NotFoundError("Customer not found. Complete checkout first.")
        try:
            return self.provider.create_portal_session(entitlement.provider_customer_ref, return_url)
        except BillingProviderError as e:
            raise BillingActionError(f"Could not open the billing portal: {e}")

    def schedule_downgrade(self, tenant_id: str, target_plan: Plan) -> Entitlement:
        """
        Schedule a move to a strictly lower tier at the end of the period.

        The plan itself only changes when the provider deletes the current
        subscription; see handle_subscription_deleted.
        """
        entitlement = self._require_entitlement(tenant_id)
        if isinstance(lifecycle_of(entitlement), (Unprovisioned, Canceled)):
            raise ValidationError("No active subscription to downgrade")
        if not is_lower_tier(target_plan, entitlement.plan):
            raise ValidationError("Cannot downgrade to a plan at the same or higher level")

        state = DowngradePending(
            subscription_ref=entitlement.provider_subscription_ref,
            plan=entitlement.plan,
            target=target_plan,
        )
        try:
            self.provider.update_subscription(entitlement.provider_subscription_ref, cancel_at_period_end=True)
        except BillingProviderError as e:
            raise BillingActionError(f"Could not schedule the downgrade: {e}")

        updated = self.store.upsert(tenant_id, state.as_fields())
        self.store.append_history(
            tenant_id,
            "downgrade_scheduled",
            f"Scheduled downgrade to {target_plan.value} plan at end of billing period",
            plan_before=entitlement.plan.value,
            plan_after=target_plan.value,
        )
        logger.info("billing.downgrade_scheduled", extra={"tenant_id": tenant_id})
        return updated

    def cancel_pending_downgrade(self, tenant_id: str) -> Entitlement:
        entitlement = self._require_entitlement(tenant_id)
        pending = entitlement.pending_downgrade_plan
        if pending is None:
            raise ValidationError("No pending downgrade to cancel")

        if entitlement.provider_subscription_ref:
            try:
                self.provider.update_subscription(entitlement.provider_subscription_ref, cancel_at_period_end=False)
            except BillingProviderError as e:
                raise BillingActionError(f"Could not cancel the pending downgrade: {e}")

        updated = self.store.upsert(tenant_id, {"pending_downgrade_plan": None, "cancel_at_period_end": False})
        self.store.append_history(
            tenant_id,
            "downgrade_cancelled",
            f"Cancelled pending downgrade to {pending.value}",
            plan_before=entitlement.plan.value,
            plan_after=entitlement.plan.value,
        )
        return updated

    def add_seats(self, tenant_id: str, count: int) -> SeatChange:
        """Add paid seats. The provider is updated before the local count."""
        if count < 1:
            raise ValidationError("Seat count must be at least 1")
        entitlement = self._require_entitlement(tenant_id)
        if entitlement.plan != Plan.TEAM:
            raise ValidationError("Only Team plan organizations can add extra seats")

        before = entitlement.extra_seats
        after = before + count
        sub_ref = entitlement.provider_subscription_ref

        if sub_ref:
            seat_price = self.catalog.seat_price_ref_for(entitlement.billing_interval)
            try:
                sub = self.provider.retrieve_subscription(sub_ref)
                item = self._find_seat_item(sub)
                if item is not None:
                    self.provider.update_subscription_item(item.id, after)
                elif seat_price:
                    self.provider.create_subscription_item(sub_ref, seat_price, after)
                else:
                    raise ValidationError("Seat pricing is not configured")
            except BillingProviderError as e:
                logger.error("billing.seat_add_failed", extra={"tenant_id": tenant_id, "error_code": "provider_error"})
                raise BillingActionError(f"Failed to add seats to subscription: {e}")

        self.store.upsert(tenant_id, {"extra_seats": after, "pending_extra_seats": None})
        self.store.append_history(
            tenant_id,
            "seats_added",
            f"Added {count} extra seat(s) - now have {after} extra seat(s)",
            seats_before=before,
            seats_after=after,
        )
        return SeatChange(seats_changed=count, extra_seats=after)

    def remove_seats(self, tenant_id: str, count: int) -> SeatChange:
        if count < 1:
            raise ValidationError("Seat count must be at least 1")
        entitlement = self._require_entitlement(tenant_id)
        if entitlement.plan != Plan.TEAM:
            raise ValidationError("Only Team plan organizations can modify seats")

        before = entitlement.extra_seats
        after = max(0, before - count)
        removed = before - after
        if removed == 0:
            return SeatChange(seats_changed=0, extra_seats=before)

        sub_ref = entitlement.provider_subscription_ref
        if sub_ref:
            try:
                sub = self.provider.retrieve_subscription(sub_ref)
                item = self._find_seat_item(sub)
                if item is None:
                    logger.warning("billing.seat_item_missing", extra={"tenant_id": tenant_id, "subscription_ref": sub_ref})
                    return SeatChange(seats_changed=0, extra_seats=before)
                if after == 0:
                    self.provider.delete_subscription_item(item.id)
                else:
                    self.provider.update_subscription_item(item.id, after)
            except BillingProviderError as e:
                logger.error("billing.seat_remove_failed", extra={"tenant_id": tenant_id, "error_code": "provider_error"})
                raise BillingActionError(f"Failed to remove seats from subscription: {e}")

        self.store.upsert(tenant_id, {"extra_seats": after, "pending_extra_seats": None})
        self.store.append_history(
            tenant_id,
            "seats_removed",
            f"Removed {removed} extra seat(s) - now have {after} extra seat(s)",
            seats_before=before,
            seats_after=after,
        )
        return SeatChange(seats_changed=removed, extra_seats=after)

    def adjust_seats_after_user_removal(self, tenant_id: str) -> Optional[SeatChange]:
        """Drop paid seats that the current headcount no longer needs."""
        entitlement = self.store.get(tenant_id)
        if entitlement is None or entitlement.plan != Plan.TEAM:
            return None
        needed = max(0, self.directory.count_users(tenant_id) - limits_for(Plan.TEAM).max_users)
        if entitlement.extra_seats > needed:
            return self.remove_seats(tenant_id, entitlement.extra_seats - needed)
        return None

    def cancel_subscription(self, tenant_id: str, at_period_end: bool = True) -> Entitlement:
        """
        Cancel the tenant's subscription.

        Immediate cancellation is finalized locally by the provider's deletion event.
        """
        entitlement = self._require_entitlement(tenant_id)
        sub_ref = entitlement.provider_subscription_ref
        if not sub_ref:
            raise ValidationError("Organization has no active subscription")

        try:
            if at_period_end:
                self.provider.update_subscription(sub_ref, cancel_at_period_end=True)
            else:
                self.provider.cancel_subscription(sub_ref)
        except BillingProviderError as e:
            raise BillingActionError(f"Could not cancel the subscription: {e}")

        if not at_period_end:
            return entitlement

        updated = self.store.upsert(tenant_id, CancelPending(subscription_ref=sub_ref).as_fields())
        self.store.append_history(tenant_id, "cancellation_scheduled", "Subscription set to cancel at period end")
        return updated

    def reactivate_subscription(self, tenant_id: str) -> Entitlement:
        entitlement = self._require_entitlement(tenant_id)
        sub_ref = entitlement.provider_subscription_ref
        if not sub_ref:
            raise ValidationError("Organization has no subscription to reactivate")
        try:
            self.provider.update_subscription(sub_ref, cancel_at_period_end=False)
        except BillingProviderError as e:
            raise BillingActionError(f"Could not reactivate the subscription: {e}")

        updated = self.store.upsert(tenant_id, {"cancel_at_period_end": False, "pending_downgrade_plan": None})
        self.store.append_history(tenant_id, "subscription_reactivated", "Subscription reactivated")
        return updated

    def sync_from_provider(self, tenant_id: str) -> SyncResult:
        """
        Re-read the tenant's subscriptions from the provider and apply the best one.

        Base-plan subscriptions win over add-on-only ones; among those the one
        with the latest period end wins. With nothing live the plan is kept.
        """
        entitlement = self._require_entitlement(tenant_id)
        customer_ref = entitlement.provider_customer_ref
        if not customer_ref:
            raise ValidationError("Organization has no billing customer")

        try:
            subscriptions = self.provider.list_subscriptions(customer_ref, status="all")
        except BillingProviderError as e:
            raise BillingActionError(f"Could not sync from the billing provider: {e}")

        live = [s for s in subscriptions if s.status in SYNCABLE_PROVIDER_STATUSES]
        if not live:
            logger.info("billing.sync_no_live_subscription", extra={"tenant_id": tenant_id})
            return SyncResult(plan=entitlement.plan, status="no_active_subscription")

        base = [s for s in live if self.catalog.is_base_plan_price(s.primary_price_ref)]
        candidates = base or live
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        chosen = max(candidates, key=lambda s: s.current_period_end or epoch)

        updated = self.apply_subscription(chosen, tenant_id=tenant_id)
        plan = updated.plan if updated else entitlement.plan
        logger.info("billing.sync_complete", extra={"tenant_id": tenant_id, "subscription_ref": chosen.id})
        return SyncResult(plan=plan, status=chosen.status, subscription_ref=chosen.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_entitlement(self, tenant_id: str) -> Entitlement:
        entitlement = self.store.get(tenant_id)
        if entitlement is None:
            raise NotFoundError("No billing record for this organization")
        return entitlement

    def _resolve_tenant(self, metadata: Mapping[str, str], customer_ref: Optional[str]) -> Optional[str]:
        """Metadata tag first, then the provider customer ref (portal changes carry no metadata)."""
        tagged = (metadata or {}).get("tenant_id")
        if tagged and self.directory.get_tenant(tagged) is not None:
            return tagged
        entitlement = self.store.find_by_provider_customer_ref(customer_ref)
        return entitlement.tenant_id if entitlement else None

    @staticmethod
    def _is_stale(current: Optional[Entitlement], subscription_ref: str) -> bool:
        """True when the tenant already points at a different subscription."""
        return (
            current is not None
            and current.provider_subscription_ref is not None
            and current.provider_subscription_ref != subscription_ref
        )

    def _find_seat_item(self, sub: ProviderSubscription) -> Optional[SubscriptionItem]:
        for item in sub.items:
            if self.catalog.is_seat_price(item.price_ref):
                return item
        for item in sub.items:
            if self.catalog.is_base_plan_price(item.price_ref):
                continue
            name = (item.product_name or "").lower()
            if "seat" in name or "user" in name:
                return item
        return None

    def _cancel_other_base_plan_subscriptions(self, tenant_id: str, customer_ref: str, keep_ref: str) -> List[str]:
        """Cancel (prorated) every other live base-plan subscription of the customer."""
        canceled: List[str] = []
        try:
            others = self.provider.list_subscriptions(customer_ref, status="all")
        except BillingProviderError:
            logger.error(
                "billing.stacked_sweep_failed",
                extra={"tenant_id": tenant_id, "customer_ref": customer_ref, "error_code": "provider_error"},
            )
            return canceled

        for other in others:
            if other.id == keep_ref or other.status not in LIVE_PROVIDER_STATUSES:
                continue
            if not self.catalog.is_base_plan_price(other.primary_price_ref):
                continue
            try:
                self.provider.cancel_subscription(other.id, prorate=True)
                canceled.append(other.id)
                logger.info(
                    "billing.stacked_subscription_canceled",
                    extra={"tenant_id": tenant_id, "subscription_ref": other.id},
                )
            except BillingProviderError:
                logger.error(
                    "billing.stacked_cancel_failed",
                    extra={"tenant_id": tenant_id, "subscription_ref": other.id, "error_code": "provider_error"},
                )
        return canceled

    def _complete_downgrade(self, tenant_id: str, current: Entitlement, customer_ref: str) -> Entitlement:
        target = current.pending_downgrade_plan
        interval = current.billing_interval
        price_ref = self.catalog.price_ref_for(target, interval)
        if not price_ref and interval != BillingInterval.MONTHLY:
            interval = BillingInterval.MONTHLY
            price_ref = self.catalog.price_ref_for(target, interval)
        if not price_ref:
            raise BillingProviderError(f"No price configured for plan: {target.value}")

        new_sub = self.provider.create_subscription(customer_ref, price_ref, metadata={"tenant_id": tenant_id})

        fields = {
            "provider_price_ref": price_ref,
            "plan": target,
            "billing_interval": interval,
            "current_period_start": new_sub.current_period_start,
            "current_period_end": new_sub.current_period_end,
            "cancel_at_period_end": False,
            # the new subscription carries the base price only
            "extra_seats": 0,
            "pending_extra_seats": None,
        }
        fields.update(Active(subscription_ref=new_sub.id).as_fields())
        updated = self.store.upsert(tenant_id, fields)
        self.store.append_history(
            tenant_id,
            "subscription_downgraded",
            f"Downgraded to {target.value} plan",
            plan_before=current.plan.value,
            plan_after=target.value,
            seats_before=current.extra_seats,
            seats_after=0,
        )
        logger.info(
            "billing.downgrade_complete",
            extra={"tenant_id": tenant_id, "subscription_ref": new_sub.id},
        )
        return updated

    def _link_checkout(self, tenant_id: str, customer_ref: Optional[str], subscription_ref: Optional[str]) -> None:
        """
        Attach a checkout's customer/subscription to an existing tenant.

        A tenant already bound to another provider customer is left alone.
        """
        current = self.store.get(tenant_id)
        if (
            current is not None
            and current.provider_customer_ref
            and current.provider_customer_ref != customer_ref
        ):
            logger.warning(
                "billing.checkout_customer_conflict",
                extra={
                    "tenant_id": tenant_id,
                    "customer_ref": customer_ref,
                    "subscription_ref": subscription_ref,
                    "error_code": "customer_conflict",
                },
            )
            return

        if subscription_ref:
            try:
                sub = self.provider.retrieve_subscription(subscription_ref)
            except BillingProviderError:
                sub = None
                logger.warning(
                    "billing.checkout_subscription_unavailable",
                    extra={"tenant_id": tenant_id, "subscription_ref": subscription_ref},
                )
            if sub is not None:
                if customer_ref:
                    self.store.upsert(tenant_id, {"provider_customer_ref": customer_ref})
                self.apply_subscription(sub, tenant_id=tenant_id)
                return

        fields = {}
        if customer_ref:
            fields["provider_customer_ref"] = customer_ref
        if subscription_ref:
            fields["provider_subscription_ref"] = subscription_ref
        if fields:
            self.store.upsert(tenant_id, fields)
        logger.info("billing.checkout_linked", extra={"tenant_id": tenant_id, "customer_ref": customer_ref})
