"""
Image requests for a conversation.

Gates a request (image limit, monthly budget, one job per conversation),
charges premium accounts, and hands the prompt to the conversation's
tracker. Results are written back into the conversation by
ConversationImageSink. A submission that fails refunds its debit.
"""
from typing import Any, Dict, Optional

from companion.core.config import settings
from companion.core.deferred import Defer, run_best_effort, submit_background
from companion.core.errors import (
    BudgetExceededError,
    InsufficientFundsError,
    JobInProgressError,
    LimitReachedError,
    NotFoundError,
    UpgradeRequiredError,
)
from companion.core.logging import log_event
from companion.features.budget.service import check_monthly_budget, log_cost
from companion.features.conversation.store import append_message, get_session
from companion.features.images.providers import ImageProvider, build_default_providers
from companion.features.images.tracker import (
    GENERATION_FAILED_MESSAGE,
    ImageJobRegistry,
    ImageJobTracker,
    Scheduler,
    registry as default_registry,
)
from companion.features.ledger.service import debit, refund
from companion.features.plans.service import get_plan, resolve_privileges, restriction_int
from companion.features.usage.service import DEFAULT_TOKENS_PER_IMAGE, check_image_limit, increment_usage
from companion.models.image_job import ImageJob, ImageJobView

IMAGE_READY_MESSAGE = "Here's your picture!"
BUDGET_MESSAGE = "Image generation is temporarily limited. Please try again later."


class ConversationImageSink:
    """Persists terminal image outcomes as assistant messages."""

    def __init__(self, session_id: str, user_id: str):
        self.session_id = session_id
        self.user_id = user_id

    def on_success(self, job: ImageJob) -> None:
        urls = job.result_urls or []
        append_message(
            self.session_id,
            self.user_id,
            "assistant",
            IMAGE_READY_MESSAGE,
            is_image=True,
            image_url=urls[0] if urls else None,
            metadata={"image_urls": urls, "task_id": job.task_id, "provider": job.provider},
        )

    def on_failure(self, job: Optional[ImageJob], message: str) -> None:
        append_message(
            self.session_id,
            self.user_id,
            "assistant",
            message or GENERATION_FAILED_MESSAGE,
            metadata={"image_failed": True, "task_id": job.task_id if job else None},
        )


def _owned_session(session_id: str, user_id: str) -> Dict:
    session = get_session(session_id)
    if not session or session["user_id"] != user_id or session["is_archived"]:
        raise NotFoundError("Conversation not found")
    return session


def _refund_failed_submit(user_id: str, session_id: str, amount: int) -> bool:
    """Return a failed submission's debit; a failed refund is logged for reconciliation."""
    try:
        refund(user_id, amount, "Image generation failed", {"session_id": session_id})
        return True
    except Exception as e:
        log_event(
            "critical",
            "images.refund_failed",
            user_id=user_id,
            session_id=session_id,
            event_type="images.refund",
            error_code="refund_failed",
            extra={"amount": amount, "error": e},
        )
        return False


def request_image(
    user_id: str,
    session_id: str,
    prompt: str,
    source_image: Optional[str] = None,
    *,
    identity: Optional[Dict[str, Any]] = None,
    registry: Optional[ImageJobRegistry] = None,
    primary: Optional[ImageProvider] = None,
    secondary: Optional[ImageProvider] = None,
    scheduler: Optional[Scheduler] = None,
    defer: Optional[Defer] = None,
) -> ImageJobView:
    """
    Start an image job in a conversation.

    Raises:
        NotFoundError: session missing, archived or not the user's
        LimitReachedError: free weekly image limit reached
        UpgradeRequiredError: premium balance below tokens_per_image
        BudgetExceededError: monthly budget ceiling reached
        JobInProgressError: the conversation already has a job in flight
        QuotaExceededError / AccessDeniedError / ProviderError: submission
            failed (the debit has been refunded)
    """
    registry = registry or default_registry
    defer = defer or submit_background
    _owned_session(session_id, user_id)

    plan = get_plan(user_id)
    privileges = resolve_privileges(user_id, identity)

    check = check_image_limit(user_id, plan=plan, privileges=privileges)
    if not check.allowed:
        if plan.is_premium:
            raise UpgradeRequiredError("You need more tokens to create pictures. Top up to continue.")
        raise LimitReachedError(
            "Weekly image limit reached. Upgrade to premium for more pictures!",
            current_usage=check.current_usage,
            limit=check.limit,
        )

    budget = check_monthly_budget()
    if not budget.allowed:
        raise BudgetExceededError(BUDGET_MESSAGE)

    def factory() -> ImageJobTracker:
        first, second = (primary, secondary) if primary is not None else build_default_providers()
        return ImageJobTracker(
            conversation_id=session_id,
            primary=first,
            secondary=second,
            sink=ConversationImageSink(session_id, user_id),
            scheduler=scheduler,
        )

    with registry.hold(session_id, factory) as tracker:
        if tracker.busy:
            raise JobInProgressError("An image is already being generated for this conversation")

        charged = 0
        if plan.is_premium and not privileges.bypass_tokens:
            cost = restriction_int(plan, "tokens_per_image", DEFAULT_TOKENS_PER_IMAGE)
            if cost > 0:
                try:
                    debit(user_id, cost, "Image generation", {"session_id": session_id})
                except InsufficientFundsError as e:
                    raise UpgradeRequiredError("You need more tokens to create pictures. Top up to continue.") from e
                charged = cost

        try:
            task_id = tracker.submit(prompt, source_image)
        except Exception as e:
            refunded = _refund_failed_submit(user_id, session_id, charged) if charged else False
            log_event(
                "warning",
                "images.submit_failed",
                user_id=user_id,
                session_id=session_id,
                event_type="images.submit",
                error_code=getattr(e, "code", "provider_error"),
                extra={"refunded": charged if refunded else 0, "error": e},
            )
            raise
        view = tracker.view()

    defer(run_best_effort, "usage.increment", increment_usage, user_id, "images", "weekly")
    defer(
        run_best_effort,
        "budget.log_cost",
        log_cost,
        "Image generation",
        charged,
        settings.IMAGE_COST_PER_IMAGE,
        user_id,
        {"session_id": session_id, "task_id": task_id},
    )
    return view


def get_image_job(session_id: str, user_id: str, registry: Optional[ImageJobRegistry] = None) -> Optional[ImageJobView]:
    _owned_session(session_id, user_id)
    tracker = (registry or default_registry).get(session_id)
    return tracker.view() if tracker else None


def cancel_image_job(session_id: str, user_id: str, registry: Optional[ImageJobRegistry] = None) -> bool:
    session = get_session(session_id)
    if not session or session["user_id"] != user_id:
        raise NotFoundError("Conversation not found")
    return (registry or default_registry).cancel(session_id)
