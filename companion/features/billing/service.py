"""
Payment event processing and premium token credits.

Applies verified payment events to plan assignments and the ledger:
- checkout.session.completed with `tokens` metadata -> purchase credit
- checkout.session.completed with plan=premium -> premium + monthly bonus
- invoice.paid -> premium period extended + monthly bonus
- customer.subscription.deleted -> downgrade to free

Each event id is applied at most once (payment_events row), and a token
purchase is credited at most once per event even across retries. The monthly
bonus is granted at most once per user per calendar month.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError

from companion.core.config import settings
from companion.core.database import get_db_session, payment_events, utc_now
from companion.core.logging import log_event
from companion.features.billing.provider import PaymentEvent, PaymentSource, PaymentWebhookError
from companion.features.billing.stripe_provider import HANDLED_EVENTS, StripePaymentSource
from companion.features.ledger.service import credit
from companion.features.plans.service import assign_plan, get_plan, restriction_int

DEFAULT_PERIOD = timedelta(days=30)


def billing_enabled() -> bool:
    return bool(settings.STRIPE_WEBHOOK_SECRET)


def get_payment_source() -> Optional[PaymentSource]:
    if not billing_enabled():
        return None
    return StripePaymentSource()


def period_key(now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    return now.strftime("%Y-%m")


def _claim(event_id: str, event_type: str, user_id: Optional[str]) -> bool:
    """Record the event id; False if it was already recorded."""
    try:
        with get_db_session() as session:
            session.execute(
                insert(payment_events).values(
                    event_id=event_id,
                    event_type=event_type,
                    user_id=user_id,
                    processed_at=utc_now(),
                )
            )
        return True
    except IntegrityError:
        return False


def _release(event_id: str) -> None:
    with get_db_session() as session:
        session.execute(delete(payment_events).where(payment_events.c.event_id == event_id))


def credit_monthly_tokens(user_id: str, key: Optional[str] = None, now: Optional[datetime] = None) -> Optional[int]:
    """
    Grant a premium user's monthly_tokens bonus for the period.

    Returns the amount credited, or None when the user is not premium, the
    plan grants nothing, or the period was already credited.
    """
    plan = get_plan(user_id)
    if not plan.is_premium:
        return None
    amount = restriction_int(plan, "monthly_tokens", 0)
    if amount <= 0:
        return None

    key = key or period_key(now)
    marker = f"monthly_tokens:{user_id}:{key}"
    if not _claim(marker, "monthly_tokens", user_id):
        return None

    try:
        credit(user_id, amount, "bonus", f"Monthly premium tokens ({key})", {"period": key})
    except Exception:
        _release(marker)
        raise

    log_event(
        "info",
        "billing.monthly_tokens_credited",
        user_id=user_id,
        event_type="billing.monthly_credit",
        extra={"amount": amount, "period": key},
    )
    return amount


def _credit_purchase(event: PaymentEvent) -> Optional[int]:
    """
    Credit a token purchase under its own marker.

    The marker outlives a failure later in the same event, so a redelivered
    event does not credit the purchase twice.
    """
    marker = f"{event.event_id}:tokens"
    if not _claim(marker, "token_purchase", event.user_id):
        return None
    try:
        credit(event.user_id, event.tokens, "purchase", f"Token purchase ({event.tokens})", {"event_id": event.event_id})
    except Exception:
        _release(marker)
        raise
    return event.tokens


def _apply(event: PaymentEvent, now: datetime) -> Dict[str, Any]:
    applied: Dict[str, Any] = {}

    if event.event_type == "checkout.session.completed":
        if event.tokens > 0:
            applied["tokens"] = _credit_purchase(event)
        if event.plan_type == "premium":
            assign_plan(event.user_id, "premium", "active", event.period_end or now + DEFAULT_PERIOD)
            applied["plan"] = "premium"
            applied["bonus"] = credit_monthly_tokens(event.user_id, now=now)

    elif event.event_type == "invoice.paid":
        assign_plan(event.user_id, "premium", "active", event.period_end or now + DEFAULT_PERIOD)
        applied["plan"] = "premium"
        applied["bonus"] = credit_monthly_tokens(event.user_id, now=now)

    elif event.event_type == "customer.subscription.deleted":
        assign_plan(event.user_id, "free", "canceled", None)
        applied["plan"] = "free"

    return applied


def apply_payment_event(event: PaymentEvent, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Apply one payment event (idempotent on event id).

    Returns:
        {"event_id", "status": "applied" | "duplicate" | "ignored", "applied"}

    Raises:
        PaymentWebhookError: a handled event names no user
    """
    now = now or utc_now()
    result: Dict[str, Any] = {"event_id": event.event_id, "status": "ignored", "applied": {}}

    if event.event_type not in HANDLED_EVENTS:
        return result
    if not event.user_id:
        raise PaymentWebhookError(f"Event {event.event_id} has no user")

    if not _claim(event.event_id, event.event_type, event.user_id):
        result["status"] = "duplicate"
        return result

    try:
        result["applied"] = _apply(event, now)
    except Exception as e:
        _release(event.event_id)
        log_event(
            "error",
            "billing.event_failed",
            user_id=event.user_id,
            event_type="billing.webhook",
            error_code="billing_error",
            extra={"event_id": event.event_id, "stripe_event_type": event.event_type, "error": e},
        )
        raise

    result["status"] = "applied"
    log_event(
        "info",
        "billing.event_applied",
        user_id=event.user_id,
        event_type="billing.webhook",
        extra={"event_id": event.event_id, "stripe_event_type": event.event_type, "applied": result["applied"]},
    )
    return result


def process_webhook(headers: Dict[str, str], body: bytes, source: Optional[PaymentSource] = None) -> Dict[str, Any]:
    """Verify, parse and apply an inbound payment webhook."""
    source = source or get_payment_source()
    if source is None:
        raise PaymentWebhookError("Billing not enabled")
    return apply_payment_event(source.parse_webhook(headers, body))
