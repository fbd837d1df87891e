"""
companion/models/conversation.py

Conversation message and pipeline result models.
"""

from datetime import datetime
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, ConfigDict

MessageRole = Literal["user", "assistant", "system"]


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    session_id: str
    user_id: str
    role: MessageRole
    content: str
    is_image: bool = False
    image_url: Optional[str] = None
    metadata: Dict[str, Any] = {}
    created_at: datetime


class SendResult(BaseModel):
    """
    Caller-facing outcome of a chat turn.

    On failure `error` is always a pre-translated, user-safe string.
    """
    model_config = ConfigDict(frozen=True)

    success: bool
    message: Optional[ChatMessage] = None
    error: Optional[str] = None
    limit_reached: bool = False
    upgrade_required: bool = False
    budget_exceeded: bool = False
    is_image: bool = False
    image_prompt: Optional[str] = None
    session_id: Optional[str] = None
    fallback: bool = False
