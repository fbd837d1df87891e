"""
Health endpoints.

Lightweight liveness/readiness probes that never expose secrets.
"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from companion.core.config import settings
from companion.core.database import get_engine, utc_now
from companion.core.logging import latency_bucket_ms, log_event

router = APIRouter(prefix="/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "account_balances",
    "ledger_transactions",
    "plan_assignments",
    "plan_restrictions",
    "usage_counters",
    "cost_logs",
    "conversation_sessions",
    "messages",
]


@root_router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    start = time.perf_counter()
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except Exception as e:
        log_event("error", "health.readyz_failed", event_type="health", extra={"error": e})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        log_event("warning", "health.readyz_missing_tables", event_type="health", extra={"detail": detail})
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {
        "status": "ok",
        "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
        "checked_at": utc_now().isoformat(),
    }


@router.get("/providers")
def providers():
    """Which generation backends are configured (booleans only)."""
    return {
        "novita": bool(settings.NOVITA_API_KEY),
        "groq": bool(settings.GROQ_API_KEY),
        "billing": bool(settings.STRIPE_WEBHOOK_SECRET),
    }
