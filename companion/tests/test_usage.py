"""
Usage counters: limit boundary, unlimited sentinel, windows, fail-open.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, select

from companion.core.database import get_db_session, plan_restrictions, usage_counters, utc_now
from companion.core.errors import ValidationError
from companion.features.characters.service import archive_character, create_character
from companion.features.ledger.service import credit
from companion.features.plans.service import assign_plan, invalidate_plan_cache, set_admin_privileges, set_restriction
from companion.features.usage import service as usage
from companion.features.usage.service import (
    check_active_companions,
    check_archived_companions,
    check_image_limit,
    check_usage,
    get_current_usage,
    get_usage_summary,
    increment_usage,
    window_reset_at,
)


def _use(user_id: str, n: int, usage_type: str = "messages", window: str = "daily"):
    for _ in range(n):
        increment_usage(user_id, usage_type, window)


def test_limit_boundary():
    set_restriction("free", "daily_message_limit", 5)

    _use("u1", 4)
    check = check_usage("u1", "messages", "daily")
    assert check.allowed
    assert check.current_usage == 4
    assert check.limit == 5

    _use("u1", 1)
    check = check_usage("u1", "messages", "daily")
    assert not check.allowed
    assert check.current_usage == 5


@pytest.mark.parametrize("stored", [None, "0", "null"])
def test_unlimited_sentinel_values(stored):
    set_restriction("free", "daily_message_limit", stored)
    _use("u1", 50)
    check = check_usage("u1", "messages", "daily")
    assert check.allowed
    assert check.limit is None


def test_missing_restriction_row_is_unlimited():
    with get_db_session() as session:
        session.execute(
            delete(plan_restrictions)
            .where(plan_restrictions.c.plan_type == "free")
            .where(plan_restrictions.c.restriction_key == "daily_message_limit")
        )
    invalidate_plan_cache()
    _use("u1", 10)
    check = check_usage("u1", "messages", "daily")
    assert check.allowed and check.limit is None


def test_bypass_skips_counters():
    set_admin_privileges("u1", bypass_message_limits=True)
    _use("u1", 10)
    check = check_usage("u1", "messages", "daily")
    assert check.allowed
    assert check.limit is None
    assert check.current_usage == 0


def test_unknown_window_rejected():
    with pytest.raises(ValidationError):
        check_usage("u1", "messages", "monthly")


def test_read_error_fails_open(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(usage, "get_current_usage", broken)
    check = check_usage("u1", "messages", "daily")
    assert check.allowed
    assert check.limit is None


def test_daily_window_ends_at_next_utc_midnight():
    now = datetime(2024, 3, 10, 15, 30, tzinfo=timezone.utc)
    assert window_reset_at("daily", now) == datetime(2024, 3, 11, tzinfo=timezone.utc)
    assert window_reset_at("weekly", now) == now + timedelta(days=7)


def test_expired_window_starts_a_new_counter():
    two_days_ago = utc_now() - timedelta(days=2)
    increment_usage("u1", "messages", "daily", now=two_days_ago)
    increment_usage("u1", "messages", "daily", now=two_days_ago)

    assert get_current_usage("u1", "messages") == 0
    increment_usage("u1", "messages", "daily")
    assert get_current_usage("u1", "messages") == 1

    with get_db_session() as session:
        rows = session.execute(select(usage_counters.c.count).where(usage_counters.c.user_id == "u1")).fetchall()
    assert sorted(r[0] for r in rows) == [1, 2]


def test_increment_failure_is_swallowed(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(usage, "_current_counter", broken)
    increment_usage("u1", "messages", "daily")


def test_free_image_limit_uses_weekly_counter():
    _use("u1", 2, "images", "weekly")
    check = check_image_limit("u1")
    assert not check.allowed
    assert check.limit == 2


def test_premium_image_limit_uses_balance():
    assign_plan("u1", "premium", "active", utc_now() + timedelta(days=30))
    credit("u1", 4, "purchase", "Token pack")
    assert not check_image_limit("u1").allowed

    credit("u1", 1, "purchase", "Token pack")
    check = check_image_limit("u1")
    assert check.allowed
    assert check.limit == 5


def test_active_companion_limit():
    create_character("u1", "Mia")
    check = check_active_companions("u1")
    assert not check.allowed
    assert check.current_usage == 1
    assert check.limit == 1


def test_archived_companions_counted_separately():
    character = create_character("u1", "Mia")
    archive_character(character["id"], "u1")
    assert check_active_companions("u1").allowed
    archived = check_archived_companions("u1")
    assert archived.current_usage == 1
    assert archived.allowed


def test_usage_summary():
    _use("u1", 2)
    summary = get_usage_summary("u1")
    assert summary["messages"]["count"] == 2
    assert summary["messages"]["limit"] == 3
    assert summary["images"]["count"] == 0
    assert summary["companions"]["limit"] == 1
