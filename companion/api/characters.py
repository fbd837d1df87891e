"""
Characters API.
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from companion.core.auth import get_identity
from companion.core.errors import NotFoundError
from companion.features.characters.service import (
    archive_character,
    create_character,
    get_character,
    list_characters,
)

router = APIRouter(prefix="/characters", tags=["characters"])


class CreateCharacterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    persona_prompt: str = Field("", max_length=8000)
    memory_level: int = Field(1, ge=1, le=3)


def _out(character: Dict[str, Any]) -> Dict[str, Any]:
    return {**character, "created_at": character["created_at"].isoformat() if character["created_at"] else None}


@router.post("", status_code=201)
def post_character(payload: CreateCharacterRequest, identity: Dict[str, Any] = Depends(get_identity)):
    character = create_character(
        identity["user_id"],
        payload.name,
        payload.persona_prompt,
        payload.memory_level,
        identity=identity,
    )
    return _out(character)


@router.get("")
def get_characters(
    include_archived: bool = Query(False, alias="includeArchived"),
    identity: Dict[str, Any] = Depends(get_identity),
):
    return {"characters": [_out(c) for c in list_characters(identity["user_id"], include_archived)]}


@router.get("/{character_id}")
def read_character(character_id: str, identity: Dict[str, Any] = Depends(get_identity)):
    character = get_character(character_id, identity["user_id"])
    if character is None:
        raise NotFoundError("Character not found")
    return _out(character)


@router.post("/{character_id}/archive")
def post_archive(character_id: str, identity: Dict[str, Any] = Depends(get_identity)):
    return _out(archive_character(character_id, identity["user_id"]))
