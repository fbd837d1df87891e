"""
Billing API routes.

- POST /api/billing/webhook: verified payment events (Stripe)
- GET  /api/billing/status: current plan and token balance
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from companion.core.auth import get_current_user_id
from companion.features.billing.provider import PaymentWebhookError
from companion.features.billing.service import billing_enabled, process_webhook
from companion.features.ledger.service import get_balance
from companion.features.plans.service import get_plan

router = APIRouter(prefix="/billing", tags=["billing"])


class BillingStatusResponse(BaseModel):
    """User billing status."""
    enabled: bool
    plan_type: str
    status: str
    period_end: Optional[str]  # ISO8601
    balance: int


@router.post("/webhook")
async def handle_webhook(request: Request) -> Dict[str, Any]:
    """
    Handle payment webhooks.

    Signature verification uses STRIPE_WEBHOOK_SECRET; each event id is
    applied once.

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    if not billing_enabled():
        raise HTTPException(
            status_code=503,
            detail={"error": "Billing disabled", "code": "billing_disabled"},
        )

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        result = process_webhook(headers, body)
    except PaymentWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"received": True, "event_id": result["event_id"], "status": result["status"]}


@router.get("/status", response_model=BillingStatusResponse)
def get_status(user_id: str = Depends(get_current_user_id)):
    plan = get_plan(user_id)
    return BillingStatusResponse(
        enabled=billing_enabled(),
        plan_type=plan.plan_type,
        status=plan.status,
        period_end=plan.period_end.isoformat() if plan.period_end else None,
        balance=get_balance(user_id),
    )
