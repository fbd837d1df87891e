"""
Budget guard: ceilings, warning band, month boundary, projection.
"""
from datetime import datetime, timezone

import pytest

from companion.features.budget.service import (
    check_monthly_budget,
    get_budget_limits,
    get_daily_usage_stats,
    get_monthly_usage,
    log_cost,
    month_start,
    project_monthly_cost,
    set_budget_limits,
)

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
EARLIER = datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc)


def test_month_start_is_first_instant_of_month():
    assert month_start(NOW) == datetime(2024, 6, 1, tzinfo=timezone.utc)


def test_empty_month_is_allowed():
    status = check_monthly_budget(now=NOW)
    assert status.allowed
    assert not status.warning
    assert status.current.api_cost == 0.0


@pytest.mark.parametrize("cost", [1000.0, 1000.01])
def test_cost_at_or_over_ceiling_denies(cost):
    log_cost("Chat message", 100, cost, "u1", created_at=EARLIER)
    status = check_monthly_budget(now=NOW)
    assert not status.allowed
    assert status.message.startswith("Monthly budget limit reached")


def test_below_warning_band():
    log_cost("Chat message", 100, 799.0, "u1", created_at=EARLIER)
    status = check_monthly_budget(now=NOW)
    assert status.allowed
    assert not status.warning
    assert status.percent_used == pytest.approx(79.9)


def test_inside_warning_band():
    log_cost("Chat message", 100, 801.0, "u1", created_at=EARLIER)
    status = check_monthly_budget(now=NOW)
    assert status.allowed
    assert status.warning
    assert status.message == "Warning: Approaching monthly budget limit (80.1% used)"


def test_previous_month_is_excluded():
    log_cost("Chat message", 100, 5000.0, "u1", created_at=datetime(2024, 5, 31, 23, 59, tzinfo=timezone.utc))
    status = check_monthly_budget(now=NOW)
    assert status.allowed
    assert status.current.api_cost == 0.0


def test_actions_counted_by_name():
    log_cost("Chat message", 10, 0.01, "u1", created_at=EARLIER)
    log_cost("Chat message", 10, 0.01, "u1", created_at=EARLIER)
    log_cost("Image generation", 0, 0.0015, "u1", created_at=EARLIER)
    log_cost("token_usage", 1, 0.0, "u1", created_at=EARLIER)

    usage = get_monthly_usage(now=NOW)
    assert usage.messages == 2
    assert usage.images == 1
    assert usage.api_cost == pytest.approx(0.0215)


def test_message_ceiling_from_override():
    set_budget_limits(messages=2)
    assert get_budget_limits().messages == 2
    assert get_budget_limits().api_cost == 1000.0

    log_cost("Chat message", 10, 0.0, "u1", created_at=EARLIER)
    assert check_monthly_budget(now=NOW).allowed

    log_cost("Chat message", 10, 0.0, "u1", created_at=EARLIER)
    status = check_monthly_budget(now=NOW)
    assert not status.allowed
    assert status.message == "Monthly message limit reached"


def test_image_ceiling():
    set_budget_limits(images=1)
    log_cost("Image generation", 0, 0.0015, "u1", created_at=EARLIER)
    status = check_monthly_budget(now=NOW)
    assert not status.allowed
    assert status.message == "Monthly image limit reached"


def test_projection_from_daily_average():
    log_cost("Chat message", 100, 140.0, "u1", created_at=EARLIER)
    projection = project_monthly_cost(now=NOW)

    assert projection.days_elapsed == 14
    assert projection.days_remaining == 16
    assert projection.current_cost == pytest.approx(140.0)
    assert projection.projected == pytest.approx(300.0)
    assert not projection.on_track_to_exceed


def test_projection_flags_overrun():
    log_cost("Chat message", 100, 700.0, "u1", created_at=EARLIER)
    assert project_monthly_cost(now=NOW).on_track_to_exceed


def test_projection_on_first_day_is_zero():
    log_cost("Chat message", 100, 50.0, "u1", created_at=datetime(2024, 6, 1, 0, 10, tzinfo=timezone.utc))
    projection = project_monthly_cost(now=datetime(2024, 6, 1, 6, 0, tzinfo=timezone.utc))
    assert projection.days_elapsed == 0
    assert projection.projected == 0.0


def test_daily_stats_grouped_by_day():
    log_cost("Chat message", 10, 0.5, "u1", created_at=datetime(2024, 6, 13, 8, 0, tzinfo=timezone.utc))
    log_cost("Chat message", 20, 0.5, "u1", created_at=datetime(2024, 6, 13, 9, 0, tzinfo=timezone.utc))
    log_cost("Image generation", 0, 0.0015, "u1", created_at=datetime(2024, 6, 14, 9, 0, tzinfo=timezone.utc))
    log_cost("Chat message", 10, 0.5, "u1", created_at=datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc))

    stats = get_daily_usage_stats(days=30, now=NOW)
    assert [day["date"] for day in stats] == ["2024-06-13", "2024-06-14"]
    assert stats[0]["messages"] == 2
    assert stats[0]["tokens_used"] == 30
    assert stats[0]["api_cost"] == pytest.approx(1.0)
    assert stats[1]["images"] == 1
