"""
Chat API.

- POST   /api/chat/messages: one chat turn (may start an image job)
- GET    /api/chat/{character_id}/history: active session messages
- DELETE /api/chat/{character_id}/history: start a fresh session
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field, field_validator

from companion.core.auth import get_identity
from companion.core.errors import AppError, NotFoundError, PersistenceError
from companion.core.logging import log_event
from companion.features.characters.service import get_character
from companion.features.conversation.pipeline import clear_history, send_message
from companion.features.conversation.store import get_active_session, get_history
from companion.features.images.service import ConversationImageSink, request_image
from companion.models.conversation import ChatMessage, SendResult

router = APIRouter(prefix="/chat", tags=["chat"])

MAX_HISTORY_PAGE = 200


class SendMessageRequest(BaseModel):
    character_id: str
    text: str = Field(..., min_length=1, max_length=4000)
    persona_prompt: Optional[str] = None
    source_image: Optional[str] = None

    @field_validator("character_id", "text")
    @classmethod
    def _trim(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


def _message_out(message: Optional[ChatMessage]) -> Optional[Dict[str, Any]]:
    if message is None:
        return None
    return {
        "id": message.id,
        "sessionId": message.session_id,
        "role": message.role,
        "content": message.content,
        "isImage": message.is_image,
        "imageUrl": message.image_url,
        "createdAt": message.created_at.isoformat(),
    }


def _result_out(result: SendResult) -> Dict[str, Any]:
    return {
        "success": result.success,
        "message": _message_out(result.message),
        "error": result.error,
        "limitReached": result.limit_reached,
        "upgradeRequired": result.upgrade_required,
        "budgetExceeded": result.budget_exceeded,
        "isImage": result.is_image,
        "imagePrompt": result.image_prompt,
        "sessionId": result.session_id,
        "fallback": result.fallback,
    }


@router.post("/messages")
def post_message(
    payload: SendMessageRequest,
    background_tasks: BackgroundTasks,
    identity: Dict[str, Any] = Depends(get_identity),
):
    user_id = identity["user_id"]
    persona_prompt = payload.persona_prompt
    if persona_prompt is None:
        character = get_character(payload.character_id, user_id)
        if character is None:
            raise NotFoundError("Character not found")
        persona_prompt = character["persona_prompt"] or ""

    result = send_message(
        payload.character_id,
        payload.text,
        persona_prompt,
        user_id,
        identity=identity,
        defer=background_tasks.add_task,
    )
    body = _result_out(result)

    if result.success and result.is_image:
        try:
            view = request_image(
                user_id,
                result.session_id,
                result.image_prompt,
                payload.source_image,
                identity=identity,
                defer=background_tasks.add_task,
            )
            body["imageJob"] = {
                "state": view.state,
                "taskId": view.job.task_id if view.job else None,
            }
        except AppError as e:
            log_event(
                "info",
                "chat.image_request_rejected",
                user_id=user_id,
                session_id=result.session_id,
                event_type="chat.image",
                error_code=e.code,
            )
            body["imageJob"] = None
            body["imageError"] = {"code": e.code, "message": e.message}
            try:
                ConversationImageSink(result.session_id, user_id).on_failure(None, e.message)
            except PersistenceError as persist_error:
                log_event(
                    "error",
                    "chat.image_rejection_not_persisted",
                    user_id=user_id,
                    session_id=result.session_id,
                    event_type="chat.image",
                    error_code="persistence_error",
                    extra={"error": persist_error},
                )

    return body


@router.get("/{character_id}/history")
def get_chat_history(
    character_id: str,
    limit: int = Query(50, ge=1, le=MAX_HISTORY_PAGE),
    before_id: Optional[int] = Query(None, alias="beforeId"),
    identity: Dict[str, Any] = Depends(get_identity),
):
    session_id = get_active_session(identity["user_id"], character_id)
    if not session_id:
        return {"sessionId": None, "messages": []}
    messages = get_history(session_id, limit, before_id=before_id)
    return {"sessionId": session_id, "messages": [_message_out(m) for m in messages]}


@router.delete("/{character_id}/history")
def delete_chat_history(character_id: str, identity: Dict[str, Any] = Depends(get_identity)):
    return {"cleared": clear_history(character_id, identity["user_id"])}
