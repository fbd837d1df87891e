"""
Monthly premium token credit.

Grants each active premium user their monthly_tokens bonus once per
calendar month, and reports ledger balances that no longer match their
transaction log.

Dry-run by default. Use --live to apply credits.
"""
from __future__ import annotations

import argparse
import os
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import or_, select

from companion.core.database import get_db_session, payment_events, plan_assignments, utc_now
from companion.core.logging import configure_logging, log_event
from companion.features.billing.service import credit_monthly_tokens, period_key
from companion.features.ledger.service import verify_balance


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _premium_users(now: datetime):
    with get_db_session() as session:
        rows = session.execute(
            select(plan_assignments.c.user_id)
            .where(plan_assignments.c.plan_type == "premium")
            .where(plan_assignments.c.status == "active")
            .where(or_(plan_assignments.c.period_end.is_(None), plan_assignments.c.period_end > now))
            .order_by(plan_assignments.c.user_id)
        ).fetchall()
    return [row[0] for row in rows]


def _already_credited(user_id: str, key: str) -> bool:
    with get_db_session() as session:
        row = session.execute(
            select(payment_events.c.event_id).where(payment_events.c.event_id == f"monthly_tokens:{user_id}:{key}")
        ).fetchone()
    return row is not None


def run_monthly_credit(*, dry_run: bool = True, now: Optional[datetime] = None) -> Dict:
    now = now or utc_now()
    key = period_key(now)
    report = {
        "period": key,
        "users": 0,
        "credited": 0,
        "tokens": 0,
        "already_credited": 0,
        "failed": 0,
        "mismatched_balances": 0,
        "dry_run": dry_run,
    }

    for user_id in _premium_users(now):
        report["users"] += 1

        if dry_run:
            if _already_credited(user_id, key):
                report["already_credited"] += 1
            else:
                report["credited"] += 1
        else:
            try:
                amount = credit_monthly_tokens(user_id, key=key, now=now)
            except Exception as e:
                report["failed"] += 1
                log_event(
                    "error",
                    "workers.monthly_credit_failed",
                    user_id=user_id,
                    event_type="workers.monthly_credit",
                    extra={"period": key, "error": e},
                )
                continue
            if amount:
                report["credited"] += 1
                report["tokens"] += amount
            else:
                report["already_credited"] += 1

        if not verify_balance(user_id):
            report["mismatched_balances"] += 1

    log_event("info", "workers.monthly_credit_done", event_type="workers.monthly_credit", extra=report)
    return report


def main() -> int:
    parser = argparse.ArgumentParser(description="Credit monthly premium tokens.")
    parser.add_argument("--live", dest="dry_run", action="store_false", help="Apply credits to the ledger.")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", help="Run without writes.")
    parser.set_defaults(dry_run=_parse_bool(os.getenv("COMPANION_MONTHLY_CREDIT_DRY_RUN", "1"), True))
    args = parser.parse_args()

    configure_logging(os.getenv("ENV", "development"))
    report = run_monthly_credit(dry_run=args.dry_run)
    print(report)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
