"""Conversation sessions and messages.

One active (non-archived) session per (user, character). Get-or-create is
serialized per pair in-process and backed by a partial unique index, so
racing first messages converge on a single session.
"""
from __future__ import annotations

import threading
import weakref
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from companion.core.database import get_db_session, conversation_sessions, messages, utc_now, as_utc
from companion.core.errors import PersistenceError
from companion.core.logging import log_event
from companion.models.conversation import ChatMessage

# Entries live while some caller holds the lock
_pair_locks: weakref.WeakValueDictionary[Tuple[str, str], threading.Lock] = weakref.WeakValueDictionary()
_pair_locks_guard = threading.Lock()


def _lock_for_pair(user_id: str, character_id: str) -> threading.Lock:
    key = (user_id, character_id)
    with _pair_locks_guard:
        lock = _pair_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _pair_locks[key] = lock
        return lock


def get_active_session(user_id: str, character_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(conversation_sessions.c.id)
            .where(conversation_sessions.c.user_id == user_id)
            .where(conversation_sessions.c.character_id == character_id)
            .where(conversation_sessions.c.is_archived == False)  # noqa: E712
            .order_by(conversation_sessions.c.updated_at.desc())
            .limit(1)
        ).fetchone()
    return row[0] if row else None


def get_or_create_session(user_id: str, character_id: str) -> str:
    """Return the active session id for the pair, creating one if none exists."""
    with _lock_for_pair(user_id, character_id):
        existing = get_active_session(user_id, character_id)
        if existing:
            return existing

        session_id = str(uuid4())
        now = utc_now()
        try:
            with get_db_session() as session:
                session.execute(
                    insert(conversation_sessions).values(
                        id=session_id,
                        user_id=user_id,
                        character_id=character_id,
                        is_archived=False,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            # Another process won the race; the index guarantees one active row
            existing = get_active_session(user_id, character_id)
            if existing:
                return existing
            raise

    log_event(
        "info",
        "conversation.session_created",
        user_id=user_id,
        session_id=session_id,
        event_type="conversation.session",
        extra={"character_id": character_id},
    )
    return session_id


def get_session(session_id: str) -> Optional[Dict]:
    with get_db_session() as session:
        row = session.execute(
            select(conversation_sessions).where(conversation_sessions.c.id == session_id)
        ).fetchone()
    if not row:
        return None
    return {
        "id": row.id,
        "user_id": row.user_id,
        "character_id": row.character_id,
        "is_archived": bool(row.is_archived),
        "updated_at": as_utc(row.updated_at),
    }


def archive_active_session(user_id: str, character_id: str) -> Optional[str]:
    """Archive the pair's active session; messages are kept. Returns its id."""
    with _lock_for_pair(user_id, character_id):
        session_id = get_active_session(user_id, character_id)
        if not session_id:
            return None
        with get_db_session() as session:
            session.execute(
                update(conversation_sessions)
                .where(conversation_sessions.c.id == session_id)
                .values(is_archived=True, updated_at=utc_now())
            )
    return session_id


def _to_message(row) -> ChatMessage:
    return ChatMessage(
        id=row.id,
        session_id=row.session_id,
        user_id=row.user_id,
        role=row.role,
        content=row.content,
        is_image=bool(row.is_image),
        image_url=row.image_url,
        metadata=row.meta or {},
        created_at=as_utc(row.created_at),
    )


def append_message(
    session_id: str,
    user_id: str,
    role: str,
    content: str,
    *,
    is_image: bool = False,
    image_url: Optional[str] = None,
    metadata: Optional[Dict] = None,
) -> ChatMessage:
    """
    Persist one message and bump the session's updated_at.

    Raises:
        PersistenceError: the write failed
    """
    now = utc_now()
    try:
        with get_db_session() as session:
            result = session.execute(
                insert(messages).values(
                    session_id=session_id,
                    user_id=user_id,
                    role=role,
                    content=content,
                    is_image=is_image,
                    image_url=image_url,
                    meta=metadata or {},
                    created_at=now,
                )
            )
            message_id = int(result.inserted_primary_key[0])
            session.execute(
                update(conversation_sessions)
                .where(conversation_sessions.c.id == session_id)
                .values(updated_at=now)
            )
    except Exception as e:
        log_event(
            "error",
            "conversation.message_write_failed",
            user_id=user_id,
            session_id=session_id,
            event_type="conversation.persist",
            error_code="persistence_error",
            extra={"role": role, "error": e},
        )
        raise PersistenceError("Could not save message") from e

    return ChatMessage(
        id=message_id,
        session_id=session_id,
        user_id=user_id,
        role=role,
        content=content,
        is_image=is_image,
        image_url=image_url,
        metadata=metadata or {},
        created_at=now,
    )


def get_history(session_id: str, limit: int, before_id: Optional[int] = None) -> List[ChatMessage]:
    """Last `limit` messages of a session, oldest first."""
    if limit <= 0:
        return []
    query = select(messages).where(messages.c.session_id == session_id)
    if before_id is not None:
        query = query.where(messages.c.id < before_id)
    query = query.order_by(messages.c.created_at.desc(), messages.c.id.desc()).limit(limit)

    with get_db_session() as session:
        rows = session.execute(query).fetchall()
    return [_to_message(row) for row in reversed(rows)]
