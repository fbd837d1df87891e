"""
Admin-only operations router.
Requires X-Admin-Key header (or an admin JWT) for all endpoints.
Budget monitoring, token grants, plan and restriction overrides.
"""

from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from companion.core.auth import require_admin
from companion.core.database import utc_now
from companion.core.logging import log_event
from companion.features.billing.service import credit_monthly_tokens
from companion.features.budget.service import (
    check_monthly_budget,
    get_daily_usage_stats,
    project_monthly_cost,
    set_budget_limits,
)
from companion.features.ledger.service import credit, get_balance, verify_balance
from companion.features.plans.service import assign_plan, get_restrictions, set_admin_privileges, set_restriction
from companion.queue_client import enqueue_monthly_credit
from companion.workers.monthly_token_credit import run_monthly_credit

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# ============================================================================
# Pydantic Models
# ============================================================================

class BudgetLimitsRequest(BaseModel):
    api_cost: Optional[float] = Field(None, gt=0)
    messages: Optional[int] = Field(None, gt=0)
    images: Optional[int] = Field(None, gt=0)


class GrantTokensRequest(BaseModel):
    user_id: str
    amount: int = Field(..., gt=0)
    reason: str = "Admin adjustment"


class RestrictionRequest(BaseModel):
    plan_type: str
    key: str
    value: Optional[str] = None


class PrivilegesRequest(BaseModel):
    user_id: str
    is_admin: bool = False
    bypass_message_limits: bool = False
    bypass_image_limits: bool = False
    bypass_token_limits: bool = False
    unlimited_tokens: bool = False


class AssignPlanRequest(BaseModel):
    user_id: str
    plan_type: str
    status: str = "active"
    period_days: Optional[int] = Field(None, gt=0)


# ============================================================================
# Budget
# ============================================================================

@router.get("/budget")
def read_budget():
    status = check_monthly_budget()
    projection = project_monthly_cost()
    return {"status": status.model_dump(), "projection": projection.model_dump()}


@router.get("/budget/daily")
def read_daily_stats(days: int = Query(30, ge=1, le=366)):
    return {"days": get_daily_usage_stats(days)}


@router.put("/budget/limits")
def update_budget_limits(payload: BudgetLimitsRequest):
    limits = set_budget_limits(payload.api_cost, payload.messages, payload.images)
    log_event("info", "admin.budget_limits_updated", event_type="admin", extra=limits.model_dump())
    return limits.model_dump()


# ============================================================================
# Tokens, plans, privileges
# ============================================================================

@router.post("/tokens/grant")
def grant_tokens(payload: GrantTokensRequest, actor: Dict[str, Any] = Depends(require_admin)):
    result = credit(payload.user_id, payload.amount, "admin_adjustment", payload.reason, {"actor": actor["user_id"]})
    return {"userId": payload.user_id, "balance": result.balance_after, "transactionId": result.transaction_id}


@router.get("/tokens/{user_id}/verify")
def verify_tokens(user_id: str):
    return {"userId": user_id, "balance": get_balance(user_id), "consistent": verify_balance(user_id)}


@router.post("/tokens/{user_id}/monthly")
def grant_monthly_tokens(user_id: str):
    return {"userId": user_id, "credited": credit_monthly_tokens(user_id)}


@router.post("/tokens/monthly/run")
def run_monthly(dry_run: bool = Query(True, alias="dryRun")):
    return run_monthly_credit(dry_run=dry_run)


@router.post("/tokens/monthly/enqueue", status_code=202)
def enqueue_monthly(dry_run: bool = Query(False, alias="dryRun")):
    return {"jobId": enqueue_monthly_credit(dry_run=dry_run)}


@router.put("/plans/assign")
def put_plan(payload: AssignPlanRequest):
    period_end = utc_now() + timedelta(days=payload.period_days) if payload.period_days else None
    assign_plan(payload.user_id, payload.plan_type, payload.status, period_end)
    return {"userId": payload.user_id, "planType": payload.plan_type, "periodEnd": period_end.isoformat() if period_end else None}


@router.get("/plans/{plan_type}/restrictions")
def read_restrictions(plan_type: str):
    return {"planType": plan_type, "restrictions": get_restrictions(plan_type)}


@router.put("/plans/restrictions")
def put_restriction(payload: RestrictionRequest):
    set_restriction(payload.plan_type, payload.key, payload.value)
    return {"planType": payload.plan_type, "restrictions": get_restrictions(payload.plan_type)}


@router.put("/privileges")
def put_privileges(payload: PrivilegesRequest):
    set_admin_privileges(
        payload.user_id,
        is_admin=payload.is_admin,
        bypass_message_limits=payload.bypass_message_limits,
        bypass_image_limits=payload.bypass_image_limits,
        bypass_token_limits=payload.bypass_token_limits,
        unlimited_tokens=payload.unlimited_tokens,
    )
    return payload.model_dump()
