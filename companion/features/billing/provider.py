"""
Payment event source protocol.

Payment capture happens at the provider; this side only receives verified,
normalized events and applies them to plans and the ledger.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol


@dataclass
class PaymentEvent:
    """A verified inbound payment event."""
    event_id: str
    event_type: str
    user_id: Optional[str]
    tokens: int = 0
    plan_type: Optional[str] = None
    period_end: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentSource(Protocol):
    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentEvent:
        """
        Verify the webhook signature and normalize the event.

        Raises:
            PaymentWebhookError: signature invalid or payload unreadable
        """
        ...


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""
    pass


class PaymentWebhookError(PaymentProviderError):
    """Webhook could not be verified or parsed."""
    pass
