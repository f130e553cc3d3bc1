"""
Health endpoints.

Lightweight liveness/readiness probes without exposing secrets.
"""

import logging
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from strategyplan.core.database import check_connection, get_engine
from strategyplan.core.logging import latency_bucket_ms

logger = logging.getLogger("strategyplan")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "tenants",
    "users",
    "entitlements",
    "processed_events",
    "billing_history",
]


@router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    start = time.perf_counter()
    if not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    inspector = inspect(get_engine())
    missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    logger.info("health.ready", extra={"latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000)})
    return {"status": "ok"}
