"""
companion/models/budget.py

Monthly budget snapshot, limits and projection.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class BudgetUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_cost: float = 0.0
    messages: int = 0
    images: int = 0


class BudgetLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_cost: float
    messages: int
    images: int


class BudgetStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    current: BudgetUsage
    limits: BudgetLimits
    percent_used: float
    message: Optional[str] = None
    warning: bool = False


class CostProjection(BaseModel):
    model_config = ConfigDict(frozen=True)

    projected: float
    days_elapsed: int
    days_remaining: int
    current_cost: float
    on_track_to_exceed: bool
