"""
Image requests: gating, debit/refund, results written into the conversation.
"""
from datetime import timedelta

import pytest

from companion.core.database import utc_now
from companion.core.errors import (
    BudgetExceededError,
    JobInProgressError,
    LimitReachedError,
    NotFoundError,
    PersistenceError,
    ProviderError,
    UpgradeRequiredError,
)
from companion.features.budget.service import get_monthly_usage, log_cost
from companion.features.conversation.store import archive_active_session, get_history, get_or_create_session
from companion.features.images import service as image_service
from companion.features.images.providers import PollResult
from companion.features.images.service import (
    IMAGE_READY_MESSAGE,
    cancel_image_job,
    get_image_job,
    request_image,
)
from companion.features.images.tracker import GENERATION_FAILED_MESSAGE, ImageJobRegistry
from companion.features.ledger.service import credit, get_balance, get_transactions, verify_balance
from companion.features.plans.service import assign_plan
from companion.features.usage.service import get_current_usage
from companion.tests.mocks import FakeImageProvider, ManualScheduler


@pytest.fixture
def env(inline_defer):
    scheduler = ManualScheduler()
    registry = ImageJobRegistry()
    providers = {"primary": FakeImageProvider("novita"), "secondary": None}

    def request(user_id, session_id, prompt="you at the beach", **kwargs):
        return request_image(
            user_id,
            session_id,
            prompt,
            registry=registry,
            primary=providers["primary"],
            secondary=providers["secondary"],
            scheduler=scheduler,
            defer=inline_defer,
            **kwargs,
        )

    yield {"request": request, "scheduler": scheduler, "registry": registry, "providers": providers}
    registry.cancel_all()


def _premium(user_id: str, balance: int):
    assign_plan(user_id, "premium", "active", utc_now() + timedelta(days=30))
    credit(user_id, balance, "purchase", "Token pack")


def test_free_image_is_written_into_conversation(env):
    session_id = get_or_create_session("u1", "c1")

    view = env["request"]("u1", session_id)
    assert view.state == "POLLING"
    assert view.job.task_id == "task-1"

    env["scheduler"].run_until_idle()

    history = get_history(session_id, 10)
    assert len(history) == 1
    assert history[0].is_image
    assert history[0].content == IMAGE_READY_MESSAGE
    assert history[0].image_url == "https://img/1.jpg"
    assert history[0].metadata["task_id"] == "task-1"
    assert get_current_usage("u1", "images") == 1
    assert get_monthly_usage().images == 1
    assert env["registry"].get(session_id) is None


def test_failed_job_writes_apology(env):
    env["providers"]["primary"] = FakeImageProvider("novita", poll_results=[PollResult(status="FAILED")])
    session_id = get_or_create_session("u1", "c1")
    env["request"]("u1", session_id)
    env["scheduler"].run_until_idle()

    history = get_history(session_id, 10)
    assert history[0].content == GENERATION_FAILED_MESSAGE
    assert history[0].metadata["image_failed"] is True
    assert not history[0].is_image


def test_free_weekly_limit(env):
    session_id = get_or_create_session("u1", "c1")
    for _ in range(2):
        env["request"]("u1", session_id)
        env["scheduler"].run_until_idle()

    with pytest.raises(LimitReachedError):
        env["request"]("u1", session_id)


def test_premium_debit_and_refund_on_submit_failure(env):
    _premium("u1", 12)
    env["providers"]["primary"] = FakeImageProvider("novita", submit_results=[RuntimeError("down")])
    session_id = get_or_create_session("u1", "c1")

    with pytest.raises(ProviderError):
        env["request"]("u1", session_id)

    assert get_balance("u1") == 12
    assert [tx["kind"] for tx in get_transactions("u1")] == ["refund", "usage", "purchase"]
    assert verify_balance("u1")
    assert get_current_usage("u1", "images") == 0


def test_failed_refund_keeps_the_submit_error(env, monkeypatch):
    _premium("u1", 12)
    env["providers"]["primary"] = FakeImageProvider("novita", submit_results=[RuntimeError("down")])
    session_id = get_or_create_session("u1", "c1")

    def broken(*args, **kwargs):
        raise PersistenceError("Could not record transaction")

    monkeypatch.setattr(image_service, "refund", broken)
    with pytest.raises(ProviderError):
        env["request"]("u1", session_id)

    assert get_balance("u1") == 7
    assert verify_balance("u1")


def test_premium_successful_submit_is_charged(env):
    _premium("u1", 12)
    session_id = get_or_create_session("u1", "c1")
    env["request"]("u1", session_id)
    assert get_balance("u1") == 7


def test_premium_below_image_cost_must_top_up(env):
    _premium("u1", 3)
    session_id = get_or_create_session("u1", "c1")
    with pytest.raises(UpgradeRequiredError):
        env["request"]("u1", session_id)
    assert get_balance("u1") == 3


def test_one_job_per_conversation(env):
    session_id = get_or_create_session("u1", "c1")
    env["request"]("u1", session_id)
    with pytest.raises(JobInProgressError):
        env["request"]("u1", session_id)


def test_budget_ceiling_blocks_images(env):
    log_cost("Chat message", 0, 1000.0)
    session_id = get_or_create_session("u1", "c1")
    with pytest.raises(BudgetExceededError):
        env["request"]("u1", session_id)


def test_other_users_conversation_is_not_found(env):
    session_id = get_or_create_session("u1", "c1")
    with pytest.raises(NotFoundError):
        env["request"]("u2", session_id)


def test_archived_conversation_is_not_found(env):
    session_id = get_or_create_session("u1", "c1")
    archive_active_session("u1", "c1")
    with pytest.raises(NotFoundError):
        env["request"]("u1", session_id)


def test_get_and_cancel_job(env):
    session_id = get_or_create_session("u1", "c1")
    assert get_image_job(session_id, "u1", registry=env["registry"]) is None

    env["request"]("u1", session_id)
    assert get_image_job(session_id, "u1", registry=env["registry"]).state == "POLLING"

    assert cancel_image_job(session_id, "u1", registry=env["registry"])
    env["scheduler"].run_until_idle()
    assert get_history(session_id, 10) == []
    assert get_image_job(session_id, "u1", registry=env["registry"]) is None
