"""
companion/models/usage.py

Result of a usage or resource-count check.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class UsageCheck(BaseModel):
    """
    allowed: whether the action may proceed
    current_usage: count in the current window (or resource count)
    limit: None means unlimited / bypassed
    """
    model_config = ConfigDict(frozen=True)

    allowed: bool
    current_usage: int = 0
    limit: Optional[int] = None
