"""
Entitlement store.

One row per tenant in `entitlements`, plus the append-only billing history
and payment-failure records. Every write is a column-level merge: callers
pass only the fields they own, so writers touching disjoint fields never
clobber each other.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from strategyplan.core.database import (
    get_db_session,
    entitlements,
    billing_history,
    payment_failures,
)
from strategyplan.models.billing import BillingHistoryEntry, Entitlement

logger = logging.getLogger(__name__)

ENTITLEMENT_FIELDS = frozenset(
    c.name for c in entitlements.columns if c.name not in ("tenant_id", "updated_at")
)

_DATETIME_FIELDS = (
    "current_period_start",
    "current_period_end",
    "trial_ends_at",
    "payment_failed_at",
    "updated_at",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_column_values(fields: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - ENTITLEMENT_FIELDS
    if unknown:
        raise ValueError(f"Unknown entitlement fields: {sorted(unknown)}")
    values: Dict[str, Any] = {}
    for key, value in fields.items():
        values[key] = value.value if isinstance(value, Enum) else value
    return values


def _row_to_entitlement(row) -> Entitlement:
    data = dict(row._mapping)
    for key in _DATETIME_FIELDS:
        data[key] = _as_utc(data.get(key))
    if data.get("extra_seats") is None:
        data["extra_seats"] = 0
    return Entitlement(**data)


class EntitlementStore:
    """Persistence for entitlements. Serializing read-modify-write is the caller's job."""

    def get(self, tenant_id: str) -> Optional[Entitlement]:
        with get_db_session() as session:
            row = session.execute(
                select(entitlements).where(entitlements.c.tenant_id == tenant_id)
            ).fetchone()
            return _row_to_entitlement(row) if row else None

    def upsert(self, tenant_id: str, fields: Mapping[str, Any]) -> Entitlement:
        """
        Merge `fields` into the tenant's entitlement, creating it with defaults if missing.

        Raises:
            ValueError: If a field name is not an entitlement column
        """
        values = _to_column_values(fields)
        values["updated_at"] = _utcnow()

        try:
            with get_db_session() as session:
                result = session.execute(
                    update(entitlements)
                    .where(entitlements.c.tenant_id == tenant_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    session.execute(insert(entitlements).values(tenant_id=tenant_id, **values))
        except IntegrityError:
            # Lost an insert race against another writer; the row exists now
            logger.info("entitlement.upsert_retry", extra={"tenant_id": tenant_id})
            with get_db_session() as session:
                session.execute(
                    update(entitlements)
                    .where(entitlements.c.tenant_id == tenant_id)
                    .values(**values)
                )

        return self.get(tenant_id)

    def find_by_provider_customer_ref(self, ref: Optional[str]) -> Optional[Entitlement]:
        if not ref:
            return None
        with get_db_session() as session:
            row = session.execute(
                select(entitlements).where(entitlements.c.provider_customer_ref == ref)
            ).fetchone()
            return _row_to_entitlement(row) if row else None

    def find_by_provider_subscription_ref(self, ref: Optional[str]) -> Optional[Entitlement]:
        if not ref:
            return None
        with get_db_session() as session:
            row = session.execute(
                select(entitlements).where(entitlements.c.provider_subscription_ref == ref)
            ).fetchone()
            return _row_to_entitlement(row) if row else None

    def list_with_customer_ref(self) -> List[Entitlement]:
        with get_db_session() as session:
            rows = session.execute(
                select(entitlements)
                .where(entitlements.c.provider_customer_ref.isnot(None))
                .order_by(entitlements.c.tenant_id)
            ).fetchall()
            return [_row_to_entitlement(row) for row in rows]

    def append_history(
        self,
        tenant_id: str,
        event_type: str,
        description: str,
        *,
        plan_before: Optional[str] = None,
        plan_after: Optional[str] = None,
        seats_before: Optional[int] = None,
        seats_after: Optional[int] = None,
        amount_cents: Optional[int] = None,
        currency: Optional[str] = None,
        provider_invoice_ref: Optional[str] = None,
    ) -> None:
        with get_db_session() as session:
            session.execute(
                insert(billing_history).values(
                    tenant_id=tenant_id,
                    event_type=event_type,
                    description=description,
                    plan_before=plan_before,
                    plan_after=plan_after,
                    seats_before=seats_before,
                    seats_after=seats_after,
                    amount_cents=amount_cents,
                    currency=currency,
                    provider_invoice_ref=provider_invoice_ref,
                    created_at=_utcnow(),
                )
            )

    def list_history(self, tenant_id: str, limit: int = 20) -> List[BillingHistoryEntry]:
        """Newest first."""
        with get_db_session() as session:
            rows = session.execute(
                select(billing_history)
                .where(billing_history.c.tenant_id == tenant_id)
                .order_by(billing_history.c.created_at.desc(), billing_history.c.id.desc())
                .limit(limit)
            ).fetchall()
            entries = []
            for row in rows:
                data = dict(row._mapping)
                data["created_at"] = _as_utc(data["created_at"])
                entries.append(BillingHistoryEntry(**data))
            return entries

    def record_payment_failure(
        self,
        tenant_id: str,
        *,
        provider_invoice_ref: Optional[str],
        amount_cents: Optional[int],
        currency: Optional[str],
        failure_reason: Optional[str],
        grace_period_ends_at: datetime,
    ) -> None:
        with get_db_session() as session:
            session.execute(
                insert(payment_failures).values(
                    tenant_id=tenant_id,
                    provider_invoice_ref=provider_invoice_ref,
                    amount_cents=amount_cents,
                    currency=currency or "usd",
                    failure_reason=failure_reason,
                    grace_period_ends_at=grace_period_ends_at,
                    created_at=_utcnow(),
                )
            )
