"""
Webhook ingress.

1. Verify signature over the raw body (invalid -> BillingWebhookError, HTTP 400)
2. Parse into an event variant
3. Claim the event id in the ledger (duplicate -> acknowledged, no work)
4. Dispatch to the reconciler

Reconciler failures are logged and written to the ledger but never surface
as ingress failures: the claim is already committed, so a provider retry
would be turned away anyway.
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from strategyplan.core.logging import log_event
from strategyplan.features.billing.events import parse_event
from strategyplan.features.billing.ledger import EventLedger
from strategyplan.features.billing.provider import BillingProvider
from strategyplan.features.billing.reconciler import Reconciler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngressResult:
    event_id: str
    event_type: str
    duplicate: bool = False
    handled: bool = True
    error: Optional[str] = None


class WebhookIngress:
    def __init__(self, provider: BillingProvider, ledger: EventLedger, reconciler: Reconciler):
        self.provider = provider
        self.ledger = ledger
        self.reconciler = reconciler

    def handle(self, body: bytes, signature: Optional[str]) -> IngressResult:
        """
        Raises:
            BillingWebhookError: If the signature or payload is invalid
        """
        payload = self.provider.construct_event(body, signature)
        event = parse_event(payload)
        event_id = payload["id"]
        event_type = payload["type"]
        payload_hash = hashlib.sha256(body).hexdigest()

        if not self.ledger.try_claim(event_id, event_type, payload_hash=payload_hash):
            log_event("info", "billing.webhook_duplicate", event_id=event_id, event_type=event_type)
            return IngressResult(event_id=event_id, event_type=event_type, duplicate=True, handled=False)

        try:
            self.reconciler.dispatch(event)
        except Exception as e:
            logger.error(
                "billing.webhook_handler_failed",
                exc_info=True,
                extra={"event_id": event_id, "event_type": event_type, "error_code": "handler_error"},
            )
            self.ledger.record_error(event_id, f"{type(e).__name__}: {e}")
            return IngressResult(event_id=event_id, event_type=event_type, handled=False, error=str(e))

        self.ledger.mark_handled(event_id)
        log_event("info", "billing.webhook_processed", event_id=event_id, event_type=event_type)
        return IngressResult(event_id=event_id, event_type=event_type)
