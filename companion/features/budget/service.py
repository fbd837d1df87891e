"""
Monthly budget guard.

Process-wide circuit breaker over external spend: aggregates the cost log
since the first instant of the current UTC month and refuses generation
once any ceiling (provider cost, message count, image count) is reached.
Costs are compared in the provider's currency.
"""
from __future__ import annotations

import calendar
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, insert, func, case

from companion.core.config import settings
from companion.core.database import get_db_session, cost_logs, utc_now, as_utc
from companion.core.logging import log_event
from companion.core.settings_cache import get_system_setting, set_system_setting
from companion.models.budget import BudgetLimits, BudgetStatus, BudgetUsage, CostProjection

BUDGET_LIMITS_SETTING = "budget_limits"


def month_start(now: Optional[datetime] = None) -> datetime:
    now = now or utc_now()
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def get_budget_limits() -> BudgetLimits:
    """Configured ceilings with the budget_limits setting merged on top."""
    limits: Dict[str, Any] = {
        "api_cost": settings.BUDGET_API_COST_LIMIT,
        "messages": settings.BUDGET_MESSAGE_LIMIT,
        "images": settings.BUDGET_IMAGE_LIMIT,
    }
    override = get_system_setting(BUDGET_LIMITS_SETTING, default={})
    if isinstance(override, dict):
        for key in limits:
            if override.get(key) is not None:
                limits[key] = override[key]
    return BudgetLimits(**limits)


def set_budget_limits(
    api_cost: Optional[float] = None,
    messages: Optional[int] = None,
    images: Optional[int] = None,
) -> BudgetLimits:
    current = get_system_setting(BUDGET_LIMITS_SETTING, default={}) or {}
    updated = dict(current)
    for key, value in (("api_cost", api_cost), ("messages", messages), ("images", images)):
        if value is not None:
            updated[key] = value
    set_system_setting(BUDGET_LIMITS_SETTING, updated)
    return get_budget_limits()


def log_cost(
    action: str,
    tokens_used: int = 0,
    api_cost: float = 0.0,
    user_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
) -> None:
    """Append one external-spend entry. Independent of the token ledger."""
    with get_db_session() as session:
        session.execute(
            insert(cost_logs).values(
                action=action,
                tokens_used=int(tokens_used or 0),
                api_cost=float(api_cost or 0.0),
                user_id=user_id,
                meta=metadata or {},
                created_at=created_at or utc_now(),
            )
        )


def get_monthly_usage(now: Optional[datetime] = None) -> BudgetUsage:
    start = month_start(now)
    action = func.lower(cost_logs.c.action)
    with get_db_session() as session:
        row = session.execute(
            select(
                func.coalesce(func.sum(cost_logs.c.api_cost), 0.0),
                func.coalesce(func.sum(case((action.like("%message%"), 1), else_=0)), 0),
                func.coalesce(func.sum(case((action.like("%image%"), 1), else_=0)), 0),
            ).where(cost_logs.c.created_at >= start)
        ).one()
    return BudgetUsage(api_cost=float(row[0] or 0.0), messages=int(row[1] or 0), images=int(row[2] or 0))


def _percent(value: float, limit: float) -> float:
    if not limit or limit <= 0:
        return 0.0
    return (value / limit) * 100


def check_monthly_budget(now: Optional[datetime] = None) -> BudgetStatus:
    """
    Evaluate the monthly ceilings.

    Returns allowed=False naming the first ceiling met or exceeded (cost,
    then messages, then images). Otherwise warning=True once the highest
    percentage reaches BUDGET_WARNING_PERCENT.
    """
    usage = get_monthly_usage(now)
    limits = get_budget_limits()

    percent_used = max(
        _percent(usage.api_cost, limits.api_cost),
        _percent(usage.messages, limits.messages),
        _percent(usage.images, limits.images),
    )

    reason = None
    if usage.api_cost >= limits.api_cost:
        reason = f"Monthly budget limit reached ({usage.api_cost:.2f}). Service temporarily disabled."
    elif usage.messages >= limits.messages:
        reason = "Monthly message limit reached"
    elif usage.images >= limits.images:
        reason = "Monthly image limit reached"

    if reason:
        log_event(
            "error",
            "budget.ceiling_reached",
            event_type="budget.check",
            error_code="budget_exceeded",
            extra={"reason": reason, "percent_used": round(percent_used, 1)},
        )
        return BudgetStatus(
            allowed=False,
            current=usage,
            limits=limits,
            percent_used=percent_used,
            message=reason,
            warning=False,
        )

    if percent_used >= settings.BUDGET_WARNING_PERCENT:
        return BudgetStatus(
            allowed=True,
            current=usage,
            limits=limits,
            percent_used=percent_used,
            message=f"Warning: Approaching monthly budget limit ({percent_used:.1f}% used)",
            warning=True,
        )

    return BudgetStatus(allowed=True, current=usage, limits=limits, percent_used=percent_used)


def project_monthly_cost(now: Optional[datetime] = None) -> CostProjection:
    """Linear projection of this month's provider cost from the daily average so far."""
    now = (now or utc_now()).astimezone(timezone.utc)
    start = month_start(now)
    total_days = calendar.monthrange(now.year, now.month)[1]
    days_elapsed = int((now - start) / timedelta(days=1))
    days_remaining = total_days - days_elapsed

    current_cost = get_monthly_usage(now).api_cost
    daily_average = current_cost / days_elapsed if days_elapsed > 0 else 0.0
    projected = daily_average * total_days

    return CostProjection(
        projected=projected,
        days_elapsed=days_elapsed,
        days_remaining=days_remaining,
        current_cost=current_cost,
        on_track_to_exceed=projected > get_budget_limits().api_cost,
    )


def get_daily_usage_stats(days: int = 30, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Per-day cost, tokens, message and image counts, oldest day first."""
    now = now or utc_now()
    cutoff = now - timedelta(days=days)
    with get_db_session() as session:
        rows = session.execute(
            select(cost_logs.c.action, cost_logs.c.tokens_used, cost_logs.c.api_cost, cost_logs.c.created_at)
            .where(cost_logs.c.created_at >= cutoff)
        ).fetchall()

    buckets: Dict[str, Dict[str, Any]] = defaultdict(
        lambda: {"api_cost": 0.0, "tokens_used": 0, "messages": 0, "images": 0}
    )
    for action, tokens_used, api_cost, created_at in rows:
        day = as_utc(created_at).date().isoformat()
        bucket = buckets[day]
        bucket["api_cost"] += float(api_cost or 0.0)
        bucket["tokens_used"] += int(tokens_used or 0)
        lowered = (action or "").lower()
        if "message" in lowered:
            bucket["messages"] += 1
        if "image" in lowered:
            bucket["images"] += 1

    return [{"date": day, **buckets[day]} for day in sorted(buckets)]
