"""
Companion characters.

A character owns a persona prompt and a memory level (1-3) that sets how
much history premium replies may see. Creation is capped by the plan's
active companion limit.
"""
from typing import Dict, Optional
from uuid import uuid4

from sqlalchemy import select, insert, update

from companion.core.database import get_db_session, characters, utc_now, as_utc
from companion.core.errors import LimitReachedError, NotFoundError, ValidationError
from companion.core.logging import log_event
from companion.features.plans.service import resolve_privileges
from companion.features.usage.service import check_active_companions

MEMORY_LEVELS = (1, 2, 3)
MAX_NAME_LENGTH = 100


def _to_dict(row) -> Dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "name": row.name,
        "persona_prompt": row.persona_prompt,
        "memory_level": int(row.memory_level or 1),
        "is_archived": bool(row.is_archived),
        "created_at": as_utc(row.created_at),
    }


def create_character(
    user_id: str,
    name: str,
    persona_prompt: str = "",
    memory_level: int = 1,
    *,
    identity: Optional[Dict] = None,
) -> Dict:
    """
    Create a character for the user.

    Raises:
        ValidationError: empty/long name or unknown memory level
        LimitReachedError: the plan's active companion limit is reached
    """
    name = (name or "").strip()
    if not name or len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Character name must be 1-{MAX_NAME_LENGTH} characters")
    if memory_level not in MEMORY_LEVELS:
        raise ValidationError(f"memory_level must be one of {MEMORY_LEVELS}")

    check = check_active_companions(user_id, privileges=resolve_privileges(user_id, identity))
    if not check.allowed:
        raise LimitReachedError(
            "You've reached your companion limit. Archive one or upgrade to add more.",
            current_usage=check.current_usage,
            limit=check.limit,
        )

    character_id = str(uuid4())
    now = utc_now()
    with get_db_session() as session:
        session.execute(
            insert(characters).values(
                id=character_id,
                user_id=user_id,
                name=name,
                persona_prompt=persona_prompt or "",
                memory_level=memory_level,
                is_archived=False,
                created_at=now,
                updated_at=now,
            )
        )

    log_event(
        "info",
        "characters.created",
        user_id=user_id,
        event_type="characters.create",
        extra={"character_id": character_id, "memory_level": memory_level},
    )
    return get_character(character_id)


def get_character(character_id: str, user_id: Optional[str] = None) -> Optional[Dict]:
    query = select(characters).where(characters.c.id == character_id)
    if user_id is not None:
        query = query.where(characters.c.user_id == user_id)
    with get_db_session() as session:
        row = session.execute(query).fetchone()
    return _to_dict(row) if row else None


def archive_character(character_id: str, user_id: str) -> Dict:
    character = get_character(character_id, user_id)
    if not character:
        raise NotFoundError("Character not found")
    if character["is_archived"]:
        return character

    with get_db_session() as session:
        session.execute(
            update(characters)
            .where(characters.c.id == character_id)
            .values(is_archived=True, updated_at=utc_now())
        )
    return get_character(character_id, user_id)


def list_characters(user_id: str, include_archived: bool = False):
    query = select(characters).where(characters.c.user_id == user_id)
    if not include_archived:
        query = query.where(characters.c.is_archived == False)  # noqa: E712
    with get_db_session() as session:
        rows = session.execute(query.order_by(characters.c.created_at)).fetchall()
    return [_to_dict(row) for row in rows]


def get_memory_level(character_id: str) -> int:
    """Memory level of a character, 1 when unknown."""
    with get_db_session() as session:
        row = session.execute(
            select(characters.c.memory_level).where(characters.c.id == character_id)
        ).fetchone()
    if not row or row[0] not in MEMORY_LEVELS:
        return 1
    return int(row[0])
