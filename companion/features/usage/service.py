"""
companion/features/usage/service.py

Usage counters and limit checks.

Handles:
- Rolling per-user windows (daily: until next UTC midnight, weekly: +7 days
  from first use)
- Limit checks against plan restrictions (fail-open on read errors)
- Image limit (premium: token balance, free: weekly counter)
- Companion count limits (active and archived characters)
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Literal, Optional, Tuple

from sqlalchemy import select, insert, update, func

from companion.core.database import get_db_session, usage_counters, characters, utc_now, as_utc
from companion.core.errors import ValidationError
from companion.core.logging import log_event
from companion.features.ledger.service import get_balance
from companion.features.plans.service import get_plan, parse_limit, resolve_privileges, restriction_int
from companion.models.plan import PlanSnapshot, Privileges
from companion.models.usage import UsageCheck

UsageType = Literal["messages", "images"]
Window = Literal["daily", "weekly"]

RESTRICTION_KEYS: Dict[Tuple[str, str], str] = {
    ("messages", "daily"): "daily_message_limit",
    ("images", "weekly"): "weekly_image_generation",
}

DEFAULT_WINDOWS: Dict[str, str] = {
    "messages": "daily",
    "images": "weekly",
}

DEFAULT_TOKENS_PER_IMAGE = 5


def window_reset_at(window: str, now: Optional[datetime] = None) -> datetime:
    """End of the window opened at `now`."""
    now = now or utc_now()
    if window == "daily":
        tomorrow = now + timedelta(days=1)
        return tomorrow.replace(hour=0, minute=0, second=0, microsecond=0)
    if window == "weekly":
        return now + timedelta(days=7)
    raise ValidationError(f"Unknown usage window: {window}")


def _bypasses(privileges: Privileges, usage_type: str) -> bool:
    if privileges.is_admin:
        return True
    if usage_type == "messages":
        return privileges.bypass_messages
    return privileges.bypass_images


def _current_counter(session, user_id: str, usage_type: str, now: datetime):
    return session.execute(
        select(usage_counters)
        .where(usage_counters.c.user_id == user_id)
        .where(usage_counters.c.usage_type == usage_type)
        .where(usage_counters.c.reset_at > now)
        .order_by(usage_counters.c.reset_at.desc())
        .limit(1)
    ).fetchone()


def get_current_usage(user_id: str, usage_type: str, now: Optional[datetime] = None) -> int:
    now = now or utc_now()
    with get_db_session() as session:
        row = _current_counter(session, user_id, usage_type, now)
    return int(row.count or 0) if row else 0


def check_usage(
    user_id: str,
    usage_type: str,
    window: str,
    *,
    plan: Optional[PlanSnapshot] = None,
    privileges: Optional[Privileges] = None,
    now: Optional[datetime] = None,
) -> UsageCheck:
    """
    Check whether a user may perform one more `usage_type` action.

    Privileged users and unlimited restrictions return allowed with
    limit=None without reading counters. Any read error fails open.
    """
    key = RESTRICTION_KEYS.get((usage_type, window))
    if key is None:
        raise ValidationError(f"No restriction for {usage_type}/{window}")

    try:
        privileges = privileges or resolve_privileges(user_id)
        if _bypasses(privileges, usage_type):
            return UsageCheck(allowed=True, current_usage=0, limit=None)

        plan = plan or get_plan(user_id)
        limit = parse_limit(plan.restrictions.get(key))
        if limit is None:
            return UsageCheck(allowed=True, current_usage=0, limit=None)

        current = get_current_usage(user_id, usage_type, now)
        return UsageCheck(allowed=current < limit, current_usage=current, limit=limit)
    except Exception as e:
        log_event(
            "warning",
            "usage.check_failed_open",
            user_id=user_id,
            event_type="usage.check",
            error_code="fail_open",
            extra={"usage_type": usage_type, "error": e},
        )
        return UsageCheck(allowed=True, current_usage=0, limit=None)


def increment_usage(user_id: str, usage_type: str, window: Optional[str] = None, now: Optional[datetime] = None) -> None:
    """
    Count one action in the user's current window, opening a window if needed.

    Best-effort: errors are logged and never raised to the caller.
    """
    window = window or DEFAULT_WINDOWS.get(usage_type, "daily")
    now = now or utc_now()
    try:
        with get_db_session() as session:
            row = _current_counter(session, user_id, usage_type, now)
            if row:
                session.execute(
                    update(usage_counters)
                    .where(usage_counters.c.id == row.id)
                    .values(count=usage_counters.c.count + 1)
                )
            else:
                session.execute(
                    insert(usage_counters).values(
                        user_id=user_id,
                        usage_type=usage_type,
                        count=1,
                        reset_at=window_reset_at(window, now),
                        created_at=now,
                    )
                )
    except Exception as e:
        log_event(
            "warning",
            "usage.increment_failed",
            user_id=user_id,
            event_type="usage.increment",
            extra={"usage_type": usage_type, "error": e},
        )


def check_image_limit(
    user_id: str,
    *,
    plan: Optional[PlanSnapshot] = None,
    privileges: Optional[Privileges] = None,
    now: Optional[datetime] = None,
) -> UsageCheck:
    """
    Image generation gate.

    Premium accounts are checked against their token balance
    (balance >= tokens_per_image); free accounts against the weekly counter.
    """
    try:
        privileges = privileges or resolve_privileges(user_id)
        if _bypasses(privileges, "images"):
            return UsageCheck(allowed=True, current_usage=0, limit=None)

        plan = plan or get_plan(user_id)
        if plan.is_premium:
            if privileges.bypass_tokens:
                return UsageCheck(allowed=True, current_usage=0, limit=None)
            cost = restriction_int(plan, "tokens_per_image", DEFAULT_TOKENS_PER_IMAGE)
            balance = get_balance(user_id)
            return UsageCheck(allowed=balance >= cost, current_usage=balance, limit=cost)
    except Exception as e:
        log_event(
            "warning",
            "usage.image_check_failed_open",
            user_id=user_id,
            event_type="usage.check",
            error_code="fail_open",
            extra={"error": e},
        )
        return UsageCheck(allowed=True, current_usage=0, limit=None)

    return check_usage(user_id, "images", "weekly", plan=plan, privileges=privileges, now=now)


def count_characters(user_id: str, archived: bool = False) -> int:
    with get_db_session() as session:
        return int(
            session.execute(
                select(func.count())
                .select_from(characters)
                .where(characters.c.user_id == user_id)
                .where(characters.c.is_archived == archived)
            ).scalar()
            or 0
        )


def _check_companions(
    user_id: str,
    restriction_key: str,
    archived: bool,
    plan: Optional[PlanSnapshot],
    privileges: Optional[Privileges],
) -> UsageCheck:
    privileges = privileges or resolve_privileges(user_id)
    if privileges.is_admin:
        return UsageCheck(allowed=True, current_usage=0, limit=None)

    plan = plan or get_plan(user_id)
    limit = parse_limit(plan.restrictions.get(restriction_key))
    current = count_characters(user_id, archived=archived)
    if limit is None:
        return UsageCheck(allowed=True, current_usage=current, limit=None)
    return UsageCheck(allowed=current < limit, current_usage=current, limit=limit)


def check_active_companions(
    user_id: str,
    *,
    plan: Optional[PlanSnapshot] = None,
    privileges: Optional[Privileges] = None,
) -> UsageCheck:
    """Non-archived characters owned by the user vs active_girlfriends_limit."""
    return _check_companions(user_id, "active_girlfriends_limit", False, plan, privileges)


def check_archived_companions(
    user_id: str,
    *,
    plan: Optional[PlanSnapshot] = None,
    privileges: Optional[Privileges] = None,
) -> UsageCheck:
    """Archived characters vs inactive_girlfriends_limit."""
    return _check_companions(user_id, "inactive_girlfriends_limit", True, plan, privileges)


def get_usage_summary(user_id: str, now: Optional[datetime] = None) -> Dict[str, Dict[str, Any]]:
    """Current window counts and limits for display."""
    plan = get_plan(user_id)
    now = now or utc_now()
    summary: Dict[str, Dict[str, Any]] = {}
    for (usage_type, window), key in RESTRICTION_KEYS.items():
        with get_db_session() as session:
            row = _current_counter(session, user_id, usage_type, now)
        summary[usage_type] = {
            "count": int(row.count) if row else 0,
            "limit": parse_limit(plan.restrictions.get(key)),
            "window": window,
            "reset_at": as_utc(row.reset_at).isoformat() if row else None,
        }
    summary["companions"] = {
        "count": count_characters(user_id),
        "limit": parse_limit(plan.restrictions.get("active_girlfriends_limit")),
    }
    return summary
