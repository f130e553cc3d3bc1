"""
Scheduled resync job.

Re-reads every tenant that has a provider customer and applies the provider's
view through the reconciler. Catches drift left by dropped webhooks or failed
compensating calls. Records one billing_job_runs row per run.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from sqlalchemy import insert

from strategyplan.core.database import get_db_session, billing_job_runs
from strategyplan.core.errors import AppError
from strategyplan.features.billing.provider import BillingProviderError
from strategyplan.features.billing.reconciler import Reconciler

logger = logging.getLogger(__name__)

JOB_NAME = "billing.resync"


def run_reconcile_job(reconciler: Reconciler, now: Optional[datetime] = None, limit: Optional[int] = None) -> Dict[str, Any]:
    started_at = now or datetime.now(timezone.utc)
    synced = 0
    failures = []

    candidates = reconciler.store.list_with_customer_ref()
    if limit is not None:
        candidates = candidates[:limit]

    for entitlement in candidates:
        try:
            reconciler.sync_from_provider(entitlement.tenant_id)
            synced += 1
        except (AppError, BillingProviderError) as e:
            failures.append({"tenant_id": entitlement.tenant_id, "error": str(e)})
            logger.warning(
                "billing.resync_failed",
                extra={"tenant_id": entitlement.tenant_id, "error_code": getattr(e, "code", "provider_error")},
            )
        except Exception as e:
            # per-tenant failures never abort the sweep
            failures.append({"tenant_id": entitlement.tenant_id, "error": f"{type(e).__name__}: {e}"})
            logger.error(
                "billing.resync_failed",
                exc_info=True,
                extra={"tenant_id": entitlement.tenant_id, "error_code": "internal_error"},
            )

    stats = {
        "tenants_checked": len(candidates),
        "tenants_synced": synced,
        "failures": len(failures),
    }
    status = "success" if not failures else "partial"

    with get_db_session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=JOB_NAME,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                status=status,
                stats_json=json.dumps(stats),
            )
        )

    logger.info("billing.resync_complete", extra={"status": status})
    return {
        **stats,
        "status": status,
        "errors": failures,
        "timestamp": started_at.isoformat(),
    }


if __name__ == "__main__":
    from strategyplan.core.config import settings
    from strategyplan.core.logging import configure_logging
    from strategyplan.features.billing.service import get_reconciler

    configure_logging(settings.ENV)
    result = run_reconcile_job(get_reconciler())
    print(result)
