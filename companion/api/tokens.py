"""
Token balance API
"""
from typing import Dict

from fastapi import APIRouter, Depends, Query

from companion.core.auth import get_current_user_id
from companion.features.ledger.service import get_balance, get_transactions
from companion.features.plans.service import get_plan
from companion.features.usage.service import get_usage_summary

router = APIRouter(prefix="/tokens", tags=["tokens"])


@router.get("/balance")
def read_balance(user_id: str = Depends(get_current_user_id)) -> Dict:
    plan = get_plan(user_id)
    return {
        "userId": user_id,
        "balance": get_balance(user_id),
        "plan": plan.plan_type,
    }


@router.get("/transactions")
def read_transactions(
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
) -> Dict:
    return {"userId": user_id, "transactions": get_transactions(user_id, limit=limit)}


@router.get("/usage")
def read_usage(user_id: str = Depends(get_current_user_id)) -> Dict:
    return {"userId": user_id, "usage": get_usage_summary(user_id)}
