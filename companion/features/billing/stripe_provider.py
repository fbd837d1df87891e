"""
Stripe payment source.

Verifies webhook signatures and maps the events we act on into
PaymentEvent. Token packs and the premium plan are identified by checkout
metadata (`tokens`, `plan`, `user_id`).
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from companion.core.config import settings
from companion.features.billing.provider import PaymentEvent, PaymentProviderError, PaymentWebhookError

HANDLED_EVENTS = (
    "checkout.session.completed",
    "invoice.paid",
    "customer.subscription.deleted",
)


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _int(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


class StripePaymentSource:
    """Stripe implementation of PaymentSource."""

    def __init__(self, webhook_secret: Optional[str] = None, secret_key: Optional[str] = None):
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        if not self.webhook_secret:
            raise PaymentProviderError("STRIPE_WEBHOOK_SECRET not configured")
        if self.secret_key:
            stripe.api_key = self.secret_key

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentEvent:
        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise PaymentWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
            event = json.loads(body)
        except ValueError as e:
            raise PaymentWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise PaymentWebhookError(f"Invalid signature: {e}")

        return self.parse_event(event)

    def parse_event(self, event: Dict[str, Any]) -> PaymentEvent:
        """Normalize a verified Stripe event."""
        event_type = event["type"]
        data = event.get("data", {}).get("object", {}) or {}
        metadata = dict(data.get("metadata") or {})

        user_id = metadata.get("user_id") or data.get("client_reference_id")
        if not user_id and data.get("customer"):
            user_id = self._customer_user_id(data["customer"])

        tokens = 0
        plan_type = None
        period_end = None

        if event_type == "checkout.session.completed":
            tokens = _int(metadata.get("tokens"))
            plan_type = metadata.get("plan")
        elif event_type == "invoice.paid":
            plan_type = "premium"
            lines = (data.get("lines") or {}).get("data") or []
            if lines:
                period_end = _timestamp((lines[0].get("period") or {}).get("end"))
        elif event_type == "customer.subscription.deleted":
            plan_type = "free"
            period_end = _timestamp(data.get("current_period_end"))

        return PaymentEvent(
            event_id=event["id"],
            event_type=event_type,
            user_id=user_id,
            tokens=tokens,
            plan_type=plan_type,
            period_end=period_end,
            metadata=metadata,
        )

    def _customer_user_id(self, customer_id: str) -> Optional[str]:
        if not self.secret_key:
            return None
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.StripeError:
            return None
        return (customer.get("metadata") or {}).get("user_id")
