"""
Conversation pipeline: one chat turn from gate to persisted reply.

Order of operations for send_message:
  1. resolve plan + privileges once
  2. daily message limit (denied -> no ledger or provider interaction)
  3. premium token debit
  4. usage increment (deferred)
  5. monthly budget guard
  6. get-or-create the active session
  7. persist the user message
  8. picture request -> placeholder, hand off to the image tracker
  9. window history by memory depth and build the envelope
 10. generate (fallback text on total provider failure, not persisted)
 11. cost log (deferred)

Every failure returned to the caller is a user-safe string; details are
logged.
"""
from typing import Any, Dict, Optional

from companion.core.config import settings
from companion.core.deferred import Defer, run_best_effort, submit_background
from companion.core.errors import InsufficientFundsError, PersistenceError, ProviderError
from companion.core.logging import log_event
from companion.features.budget.service import check_monthly_budget, log_cost
from companion.features.characters.service import get_memory_level
from companion.features.conversation.classifier import extract_image_prompt, is_image_request
from companion.features.conversation.prompts import build_envelope, memory_depth
from companion.features.conversation.store import (
    append_message,
    archive_active_session,
    get_history,
    get_or_create_session,
)
from companion.features.images.tracker import registry
from companion.features.ledger.service import debit
from companion.features.plans.service import get_plan, resolve_privileges, restriction_int
from companion.features.providers.text import GenerationAdapter, build_default_adapter
from companion.features.usage.service import check_usage, increment_usage
from companion.models.conversation import SendResult

FREE_LIMIT_MESSAGE = "You've reached your daily message limit. Upgrade to premium for unlimited messages!"
PREMIUM_LIMIT_MESSAGE = "Daily message limit reached. Please try again tomorrow."
OUT_OF_TOKENS_MESSAGE = "You're out of tokens. Top up or upgrade to keep chatting."
BUDGET_MESSAGE = "The service is temporarily limited. Please try again later."
SYSTEM_ERROR_MESSAGE = "Something went wrong. Please try again."
FALLBACK_MESSAGE = "I'm having trouble connecting to my system right now. Please try again in a moment."
IMAGE_PLACEHOLDER_MESSAGE = "I'm creating a picture for you. One moment..."

_default_adapter: Optional[GenerationAdapter] = None


def get_adapter() -> GenerationAdapter:
    global _default_adapter
    if _default_adapter is None:
        _default_adapter = build_default_adapter()
    return _default_adapter


def chat_cost(total_tokens: Optional[int]) -> float:
    tokens = total_tokens or settings.CHAT_DEFAULT_TOKENS
    return (tokens / 1_000_000) * settings.CHAT_COST_PER_MILLION_TOKENS


def send_message(
    character_id: str,
    user_text: str,
    persona_prompt: str,
    user_id: str,
    *,
    identity: Optional[Dict[str, Any]] = None,
    adapter: Optional[GenerationAdapter] = None,
    defer: Optional[Defer] = None,
) -> SendResult:
    """
    Run one chat turn.

    Args:
        character_id: Character being talked to
        user_text: The user's message
        persona_prompt: Character persona for the system message
        user_id: Authenticated user
        identity: Identity flags (is_admin, bypass_limits) from auth
        adapter: Text generation adapter (default: configured backends)
        defer: Scheduler for best-effort side effects (default: thread pool)

    Returns:
        SendResult; never raises for expected failures
    """
    defer = defer or submit_background
    adapter = adapter or get_adapter()

    try:
        plan = get_plan(user_id)
        privileges = resolve_privileges(user_id, identity)
    except Exception as e:
        log_event("error", "conversation.plan_lookup_failed", user_id=user_id, error_code="plan_error", extra={"error": e})
        return SendResult(success=False, error=SYSTEM_ERROR_MESSAGE)
    premium = plan.is_premium

    usage = check_usage(user_id, "messages", "daily", plan=plan, privileges=privileges)
    if not usage.allowed:
        log_event(
            "info",
            "conversation.limit_reached",
            user_id=user_id,
            event_type="conversation.gate",
            error_code="limit_reached",
            extra={"current_usage": usage.current_usage, "limit": usage.limit},
        )
        return SendResult(
            success=False,
            error=PREMIUM_LIMIT_MESSAGE if premium else FREE_LIMIT_MESSAGE,
            limit_reached=True,
            upgrade_required=not premium,
        )

    if premium and not privileges.bypass_tokens:
        cost = restriction_int(plan, "tokens_per_message", 1)
        if cost > 0:
            try:
                debit(user_id, cost, "Chat message", {"character_id": character_id})
            except InsufficientFundsError:
                return SendResult(success=False, error=OUT_OF_TOKENS_MESSAGE, upgrade_required=True)
            except Exception as e:
                log_event(
                    "error",
                    "conversation.debit_failed",
                    user_id=user_id,
                    event_type="conversation.debit",
                    error_code="ledger_error",
                    extra={"error": e},
                )
                return SendResult(success=False, error=SYSTEM_ERROR_MESSAGE)

    defer(run_best_effort, "usage.increment", increment_usage, user_id, "messages", "daily")

    try:
        budget = check_monthly_budget()
    except Exception as e:
        log_event(
            "error",
            "conversation.budget_check_failed",
            user_id=user_id,
            event_type="conversation.gate",
            error_code="budget_error",
            extra={"error": e},
        )
        return SendResult(success=False, error=SYSTEM_ERROR_MESSAGE)
    if not budget.allowed:
        return SendResult(success=False, error=BUDGET_MESSAGE, budget_exceeded=True)

    try:
        session_id = get_or_create_session(user_id, character_id)
        user_message = append_message(session_id, user_id, "user", user_text)
    except Exception as e:
        log_event(
            "error",
            "conversation.user_message_failed",
            user_id=user_id,
            event_type="conversation.persist",
            error_code="persistence_error",
            extra={"character_id": character_id, "error": e},
        )
        return SendResult(success=False, error=SYSTEM_ERROR_MESSAGE)

    if is_image_request(user_text):
        prompt = extract_image_prompt(user_text)
        try:
            placeholder = append_message(
                session_id,
                user_id,
                "assistant",
                IMAGE_PLACEHOLDER_MESSAGE,
                is_image=True,
                metadata={"placeholder": True, "image_prompt": prompt},
            )
        except PersistenceError:
            return SendResult(success=False, error=SYSTEM_ERROR_MESSAGE, session_id=session_id)
        return SendResult(
            success=True,
            message=placeholder,
            is_image=True,
            image_prompt=prompt,
            session_id=session_id,
        )

    depth = memory_depth(premium, get_memory_level(character_id) if premium else 1)
    history = get_history(session_id, depth, before_id=user_message.id)
    envelope = build_envelope(persona_prompt, history, user_text, premium)

    try:
        generation = adapter.generate(envelope, premium=premium, user_id=user_id)
    except ProviderError as e:
        log_event(
            "error",
            "conversation.generation_failed",
            user_id=user_id,
            session_id=session_id,
            event_type="conversation.generate",
            error_code="provider_error",
            extra={"error": e},
        )
        return SendResult(success=False, error=FALLBACK_MESSAGE, fallback=True, session_id=session_id)

    try:
        reply = append_message(
            session_id,
            user_id,
            "assistant",
            generation.text,
            metadata={"backend": generation.backend, "total_tokens": generation.total_tokens},
        )
    except PersistenceError:
        return SendResult(success=False, error=SYSTEM_ERROR_MESSAGE, session_id=session_id)

    tokens = generation.total_tokens or settings.CHAT_DEFAULT_TOKENS
    defer(
        run_best_effort,
        "budget.log_cost",
        log_cost,
        "Chat message",
        tokens,
        chat_cost(generation.total_tokens),
        user_id,
        {"backend": generation.backend, "session_id": session_id},
    )

    return SendResult(success=True, message=reply, session_id=session_id)


def clear_history(character_id: str, user_id: str) -> bool:
    """
    Start over with a character.

    Archives the active session (messages are kept for the record) and drops
    any image job attached to it. The next message opens a fresh session.
    """
    session_id = archive_active_session(user_id, character_id)
    if not session_id:
        return False
    registry.cancel(session_id)
    log_event(
        "info",
        "conversation.cleared",
        user_id=user_id,
        session_id=session_id,
        event_type="conversation.clear",
        extra={"character_id": character_id},
    )
    return True
