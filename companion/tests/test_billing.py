"""
Payment events: signature verification, idempotent application, monthly bonus.
"""
import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest

from companion.core.database import utc_now
from companion.features.billing import service as billing
from companion.features.billing.provider import PaymentEvent, PaymentProviderError, PaymentWebhookError
from companion.features.billing.service import apply_payment_event, credit_monthly_tokens, period_key, process_webhook
from companion.features.billing.stripe_provider import StripePaymentSource
from companion.features.ledger.service import get_balance, get_transactions, verify_balance
from companion.features.plans.service import assign_plan, get_plan

SECRET = "whsec_test"


def _signed(payload: dict, secret: str = SECRET):
    body = json.dumps(payload).encode()
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={timestamp},v1={signature}"}, body


def _checkout(event_id="evt_1", user_id="u1", **metadata):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {"metadata": {"user_id": user_id, **metadata}}},
    }


def test_token_purchase_credits_once():
    event = PaymentEvent(event_id="evt_1", event_type="checkout.session.completed", user_id="u1", tokens=50)

    first = apply_payment_event(event)
    second = apply_payment_event(event)

    assert first["status"] == "applied"
    assert first["applied"] == {"tokens": 50}
    assert second["status"] == "duplicate"
    assert get_balance("u1") == 50
    assert verify_balance("u1")


def test_premium_checkout_grants_plan_and_bonus():
    event = PaymentEvent(
        event_id="evt_2", event_type="checkout.session.completed", user_id="u1", plan_type="premium"
    )
    result = apply_payment_event(event)

    assert result["applied"]["plan"] == "premium"
    assert result["applied"]["bonus"] == 100
    assert get_plan("u1").is_premium
    assert get_balance("u1") == 100


def test_invoice_in_same_month_does_not_double_bonus():
    now = utc_now()
    apply_payment_event(
        PaymentEvent(event_id="evt_a", event_type="checkout.session.completed", user_id="u1", plan_type="premium"),
        now=now,
    )
    result = apply_payment_event(
        PaymentEvent(event_id="evt_b", event_type="invoice.paid", user_id="u1", plan_type="premium"),
        now=now,
    )

    assert result["status"] == "applied"
    assert result["applied"]["bonus"] is None
    assert get_balance("u1") == 100


def test_invoice_extends_premium_period():
    period_end = utc_now() + timedelta(days=31)
    apply_payment_event(
        PaymentEvent(event_id="evt_c", event_type="invoice.paid", user_id="u1", period_end=period_end)
    )
    plan = get_plan("u1")
    assert plan.is_premium
    assert abs((plan.period_end - period_end).total_seconds()) < 1


def test_subscription_deleted_downgrades():
    assign_plan("u1", "premium", "active", utc_now() + timedelta(days=30))
    apply_payment_event(PaymentEvent(event_id="evt_d", event_type="customer.subscription.deleted", user_id="u1"))
    plan = get_plan("u1")
    assert plan.plan_type == "free"
    assert plan.status == "canceled"


def test_unhandled_event_is_ignored():
    result = apply_payment_event(PaymentEvent(event_id="evt_e", event_type="charge.refunded", user_id="u1"))
    assert result["status"] == "ignored"


def test_handled_event_without_user_is_rejected():
    with pytest.raises(PaymentWebhookError):
        apply_payment_event(PaymentEvent(event_id="evt_f", event_type="invoice.paid", user_id=None))


def test_failed_application_can_be_retried(monkeypatch):
    event = PaymentEvent(event_id="evt_g", event_type="checkout.session.completed", user_id="u1", tokens=10)

    def broken(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(billing, "credit", broken)
    with pytest.raises(RuntimeError):
        apply_payment_event(event)

    monkeypatch.undo()
    assert apply_payment_event(event)["status"] == "applied"
    assert get_balance("u1") == 10


def test_retried_mixed_checkout_credits_purchase_once(monkeypatch):
    event = PaymentEvent(
        event_id="evt_m", event_type="checkout.session.completed", user_id="u1", tokens=50, plan_type="premium"
    )

    def broken(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(billing, "assign_plan", broken)
    with pytest.raises(RuntimeError):
        apply_payment_event(event)
    assert get_balance("u1") == 50

    monkeypatch.undo()
    result = apply_payment_event(event)

    assert result["status"] == "applied"
    assert result["applied"]["tokens"] is None
    assert result["applied"]["bonus"] == 100
    assert get_balance("u1") == 150
    assert [tx["kind"] for tx in get_transactions("u1")].count("purchase") == 1
    assert verify_balance("u1")


def test_monthly_credit_only_for_premium_and_once_per_period():
    assert credit_monthly_tokens("u1") is None

    assign_plan("u1", "premium", "active", utc_now() + timedelta(days=30))
    assert credit_monthly_tokens("u1", key="2030-01") == 100
    assert credit_monthly_tokens("u1", key="2030-01") is None
    assert credit_monthly_tokens("u1", key="2030-02") == 100

    assert get_balance("u1") == 200
    assert {tx["kind"] for tx in get_transactions("u1")} == {"bonus"}


def test_period_key_format():
    assert period_key(utc_now().replace(year=2024, month=3, day=5)) == "2024-03"


def test_stripe_source_requires_webhook_secret(monkeypatch):
    monkeypatch.setattr(billing.settings, "STRIPE_WEBHOOK_SECRET", None)
    with pytest.raises(PaymentProviderError):
        StripePaymentSource()


def test_stripe_signature_verified_and_parsed():
    headers, body = _signed(_checkout(tokens="25"))
    event = StripePaymentSource(webhook_secret=SECRET).parse_webhook(headers, body)

    assert event.event_id == "evt_1"
    assert event.user_id == "u1"
    assert event.tokens == 25


def test_stripe_bad_signature_rejected():
    headers, body = _signed(_checkout(tokens="25"), secret="whsec_other")
    with pytest.raises(PaymentWebhookError):
        StripePaymentSource(webhook_secret=SECRET).parse_webhook(headers, body)


def test_stripe_missing_signature_rejected():
    with pytest.raises(PaymentWebhookError):
        StripePaymentSource(webhook_secret=SECRET).parse_webhook({}, b"{}")


def test_parse_invoice_and_client_reference():
    source = StripePaymentSource(webhook_secret=SECRET)
    invoice = source.parse_event(
        {
            "id": "evt_i",
            "type": "invoice.paid",
            "data": {
                "object": {
                    "client_reference_id": "u7",
                    "lines": {"data": [{"period": {"end": 1893456000}}]},
                }
            },
        }
    )
    assert invoice.user_id == "u7"
    assert invoice.plan_type == "premium"
    assert invoice.period_end.year == 2030


def test_process_webhook_end_to_end():
    headers, body = _signed(_checkout(event_id="evt_w", tokens="30"))
    result = process_webhook(headers, body, source=StripePaymentSource(webhook_secret=SECRET))
    assert result["status"] == "applied"
    assert get_balance("u1") == 30
