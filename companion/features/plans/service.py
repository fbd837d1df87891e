"""
companion/features/plans/service.py

Plan registry.

Handles:
- Restriction seeding (free, premium)
- User plan assignment
- Plan + restriction resolution (restrictions served from the TTL cache)
- Privilege resolution (admin / bypass flags) once per request
"""

from datetime import datetime
from typing import Any, Dict, Optional, Union

from sqlalchemy import select, insert, update

from companion.core.database import (
    get_db_session,
    plan_assignments,
    plan_restrictions,
    admin_privileges,
    utc_now,
    as_utc,
)
from companion.core.errors import ValidationError
from companion.core.logging import log_event
from companion.core.settings_cache import settings_cache
from companion.models.plan import PlanSnapshot, Privileges

PLAN_TYPES = ("free", "premium")

# None means unlimited
DEFAULT_RESTRICTIONS: Dict[str, Dict[str, Optional[int]]] = {
    "free": {
        "daily_message_limit": 3,
        "weekly_image_generation": 2,
        "tokens_per_message": 0,
        "tokens_per_image": 5,
        "monthly_tokens": 0,
        "active_girlfriends_limit": 1,
        "inactive_girlfriends_limit": 999,
    },
    "premium": {
        "daily_message_limit": None,
        "weekly_image_generation": None,
        "tokens_per_message": 1,
        "tokens_per_image": 5,
        "monthly_tokens": 100,
        "active_girlfriends_limit": 3,
        "inactive_girlfriends_limit": 999,
    },
}


def parse_limit(value: Union[str, int, float, None]) -> Optional[int]:
    """
    Parse a stored restriction value.

    Returns None (unlimited) for a missing value, null, anything that does
    not parse as a number, or a number <= 0.
    """
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip().lower()
        if stripped in ("", "null", "none"):
            return None
        try:
            number = float(stripped)
        except ValueError:
            return None
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
    if number <= 0:
        return None
    return int(number)


def restriction_int(plan: PlanSnapshot, key: str, default: int) -> int:
    """Numeric restriction (a cost or grant, so 0 is kept); default when absent or unreadable."""
    value = plan.restrictions.get(key)
    if value is None:
        return default
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return default
    return number if number >= 0 else default


def seed_default_restrictions() -> None:
    """
    Seed default restrictions (idempotent).

    Existing rows are left untouched so operator edits survive restarts.
    """
    with get_db_session() as session:
        existing = {
            (row.plan_type, row.restriction_key)
            for row in session.execute(
                select(plan_restrictions.c.plan_type, plan_restrictions.c.restriction_key)
            ).fetchall()
        }
        for plan_type, values in DEFAULT_RESTRICTIONS.items():
            for key, value in values.items():
                if (plan_type, key) in existing:
                    continue
                session.execute(
                    insert(plan_restrictions).values(
                        plan_type=plan_type,
                        restriction_key=key,
                        value=None if value is None else str(value),
                        updated_at=utc_now(),
                    )
                )
    invalidate_plan_cache()


def _load_restrictions(plan_type: str) -> Dict[str, Optional[str]]:
    with get_db_session() as session:
        rows = session.execute(
            select(plan_restrictions.c.restriction_key, plan_restrictions.c.value)
            .where(plan_restrictions.c.plan_type == plan_type)
        ).fetchall()
    return {row.restriction_key: row.value for row in rows}


def get_restrictions(plan_type: str) -> Dict[str, Optional[str]]:
    return settings_cache.get(f"restrictions:{plan_type}", lambda: _load_restrictions(plan_type))


def invalidate_plan_cache(plan_type: Optional[str] = None) -> None:
    if plan_type is None:
        for known in PLAN_TYPES:
            settings_cache.invalidate(f"restrictions:{known}")
    else:
        settings_cache.invalidate(f"restrictions:{plan_type}")


def set_restriction(plan_type: str, key: str, value: Optional[Any]) -> None:
    """Upsert one restriction and drop the cached map for its plan."""
    if plan_type not in PLAN_TYPES:
        raise ValidationError(f"Unknown plan type: {plan_type}")
    stored = None if value is None else str(value)
    with get_db_session() as session:
        result = session.execute(
            update(plan_restrictions)
            .where(plan_restrictions.c.plan_type == plan_type)
            .where(plan_restrictions.c.restriction_key == key)
            .values(value=stored, updated_at=utc_now())
        )
        if result.rowcount == 0:
            session.execute(
                insert(plan_restrictions).values(
                    plan_type=plan_type,
                    restriction_key=key,
                    value=stored,
                    updated_at=utc_now(),
                )
            )
    invalidate_plan_cache(plan_type)


def get_plan(user_id: str) -> PlanSnapshot:
    """
    Resolve a user's active plan and its restrictions.

    Users without an assignment are on free. A premium assignment past its
    period_end, or not active, resolves to free.
    """
    with get_db_session() as session:
        row = session.execute(
            select(plan_assignments).where(plan_assignments.c.user_id == user_id)
        ).fetchone()

    plan_type = "free"
    status = "active"
    period_end = None
    if row:
        status = row.status
        period_end = as_utc(row.period_end)
        expired = period_end is not None and period_end <= utc_now()
        if row.plan_type in PLAN_TYPES and status == "active" and not expired:
            plan_type = row.plan_type

    return PlanSnapshot(
        user_id=user_id,
        plan_type=plan_type,
        status=status,
        period_end=period_end,
        restrictions=get_restrictions(plan_type),
    )


def assign_plan(
    user_id: str,
    plan_type: str,
    status: str = "active",
    period_end: Optional[datetime] = None,
) -> None:
    """Create or update a user's plan assignment (idempotent)."""
    if plan_type not in PLAN_TYPES:
        raise ValidationError(f"Unknown plan type: {plan_type}")

    now = utc_now()
    with get_db_session() as session:
        result = session.execute(
            update(plan_assignments)
            .where(plan_assignments.c.user_id == user_id)
            .values(plan_type=plan_type, status=status, period_end=period_end, updated_at=now)
        )
        if result.rowcount == 0:
            session.execute(
                insert(plan_assignments).values(
                    user_id=user_id,
                    plan_type=plan_type,
                    status=status,
                    period_end=period_end,
                    created_at=now,
                    updated_at=now,
                )
            )

    log_event(
        "info",
        "plans.assigned",
        user_id=user_id,
        event_type="plans.assign",
        extra={"plan_type": plan_type, "status": status},
    )


def set_admin_privileges(
    user_id: str,
    *,
    is_admin: bool = False,
    bypass_message_limits: bool = False,
    bypass_image_limits: bool = False,
    bypass_token_limits: bool = False,
    unlimited_tokens: bool = False,
) -> None:
    values = dict(
        is_admin=is_admin,
        bypass_message_limits=bypass_message_limits,
        bypass_image_limits=bypass_image_limits,
        bypass_token_limits=bypass_token_limits,
        unlimited_tokens=unlimited_tokens,
        updated_at=utc_now(),
    )
    with get_db_session() as session:
        result = session.execute(
            update(admin_privileges).where(admin_privileges.c.user_id == user_id).values(**values)
        )
        if result.rowcount == 0:
            session.execute(insert(admin_privileges).values(user_id=user_id, **values))


def resolve_privileges(user_id: str, identity: Optional[Dict[str, Any]] = None) -> Privileges:
    """
    Merge identity flags with stored overrides into one capability set.

    Administrators bypass every limit. A failed override lookup degrades to
    the identity flags alone.
    """
    identity = identity or {}
    is_admin = bool(identity.get("is_admin"))
    bypass_all = bool(identity.get("bypass_limits"))
    flags = {
        "bypass_messages": bypass_all,
        "bypass_images": bypass_all,
        "bypass_tokens": bypass_all,
        "unlimited_tokens": False,
    }

    try:
        with get_db_session() as session:
            row = session.execute(
                select(admin_privileges).where(admin_privileges.c.user_id == user_id)
            ).fetchone()
    except Exception as e:
        log_event("warning", "plans.privileges_lookup_failed", user_id=user_id, extra={"error": e})
        row = None

    if row:
        is_admin = is_admin or bool(row.is_admin)
        flags["bypass_messages"] = flags["bypass_messages"] or bool(row.bypass_message_limits)
        flags["bypass_images"] = flags["bypass_images"] or bool(row.bypass_image_limits)
        flags["bypass_tokens"] = flags["bypass_tokens"] or bool(row.bypass_token_limits)
        flags["unlimited_tokens"] = bool(row.unlimited_tokens)

    if is_admin:
        return Privileges(
            is_admin=True,
            bypass_messages=True,
            bypass_images=True,
            bypass_tokens=True,
            unlimited_tokens=True,
        )
    if flags["unlimited_tokens"]:
        flags["bypass_tokens"] = True
    return Privileges(is_admin=False, **flags)
