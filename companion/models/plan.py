"""
companion/models/plan.py

Plan snapshot and privilege models.

A plan snapshot is resolved once per request and threaded through every
gate; restrictions are raw stored values, parsed by the caller.
"""

from datetime import datetime
from typing import Dict, Literal, Optional
from pydantic import BaseModel, ConfigDict

PlanType = Literal["free", "premium"]


class PlanSnapshot(BaseModel):
    """Active plan for a user plus the restriction rows of that plan type."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_type: PlanType = "free"
    status: str = "active"
    period_end: Optional[datetime] = None
    restrictions: Dict[str, Optional[str]] = {}

    @property
    def is_premium(self) -> bool:
        return self.plan_type == "premium"


class Privileges(BaseModel):
    """Capabilities resolved once per request from identity + overrides."""
    model_config = ConfigDict(frozen=True)

    is_admin: bool = False
    bypass_messages: bool = False
    bypass_images: bool = False
    bypass_tokens: bool = False
    unlimited_tokens: bool = False
