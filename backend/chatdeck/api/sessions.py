import asyncio
import json

import asyncpg
from fastapi import APIRouter, Depends, HTTPException, Query, status
from loguru import logger

from chatdeck.core.security import get_current_user
from chatdeck.db import postgres
from chatdeck.models.chat import KnowledgeItem
from chatdeck.models.sessions import (
    MessageIn,
    MessageOut,
    MessagePage,
    PromptOverrideIn,
    SessionCreate,
    SessionOut,
    SessionRename,
    SessionUpsert,
)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

MAX_TITLE_LENGTH = 50
INITIAL_MESSAGES_LOAD = 20
MESSAGES_PER_PAGE = 50


def limit_title(title: str) -> str:
    """Stored titles are cut at MAX_TITLE_LENGTH with no ellipsis."""
    return title[:MAX_TITLE_LENGTH]


# ── Row helpers ─────────────────────────────────────────────────────────────────

def _knowledge(raw) -> list[KnowledgeItem] | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = json.loads(raw)
    return [KnowledgeItem(**item) for item in raw]


def _knowledge_json(items: list[KnowledgeItem] | None) -> str | None:
    if items is None:
        return None
    return json.dumps([item.model_dump() for item in items])


def _session_out(row, messages: list[MessageOut] | None = None, has_more: bool = False) -> SessionOut:
    return SessionOut(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        prompt_override=row["prompt_override"],
        knowledge_override=_knowledge(row["knowledge_override"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        messages=messages or [],
        has_more_messages=has_more,
    )


async def _owned_session_or_404(session_id: str, user_id: int):
    row = await postgres.fetch_one(
        "SELECT * FROM chat_sessions WHERE id = $1 AND user_id = $2",
        session_id,
        user_id,
    )
    if not row:
        raise HTTPException(status_code=404, detail="Session not found")
    return row


async def _latest_messages(session_id: str, limit: int) -> tuple[list[MessageOut], bool]:
    """Newest `limit` messages in chronological order, plus whether older ones exist."""
    rows = await postgres.fetch_all(
        """SELECT id, session_id, role, content, created_at FROM chat_messages
           WHERE session_id = $1
           ORDER BY created_at DESC
           LIMIT $2""",
        session_id,
        limit + 1,
    )
    has_more = len(rows) > limit
    messages = [MessageOut(**dict(r)) for r in rows[:limit]]
    messages.reverse()
    return messages, has_more


# ── Routes ──────────────────────────────────────────────────────────────────────

@router.get("", response_model=list[SessionOut])
async def list_sessions(
    recent: int = Query(INITIAL_MESSAGES_LOAD, ge=0, le=500),
    current_user: dict = Depends(get_current_user),
) -> list[SessionOut]:
    """All sessions of the user, each with its `recent` latest messages."""
    rows = await postgres.fetch_all(
        """SELECT * FROM chat_sessions
           WHERE user_id = $1
           ORDER BY updated_at DESC""",
        current_user["id"],
    )
    if not rows:
        return []

    pages = await asyncio.gather(*(_latest_messages(r["id"], recent) for r in rows))
    return [
        _session_out(row, messages, has_more)
        for row, (messages, has_more) in zip(rows, pages)
    ]


@router.post("", response_model=SessionOut, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: SessionCreate,
    current_user: dict = Depends(get_current_user),
) -> SessionOut:
    try:
        row = await postgres.fetch_one(
            """INSERT INTO chat_sessions (id, user_id, title, prompt_override, knowledge_override)
               VALUES ($1, $2, $3, $4, $5::jsonb)
               RETURNING *""",
            body.id,
            current_user["id"],
            limit_title(body.title),
            body.prompt_override,
            _knowledge_json(body.knowledge_override),
        )
    except asyncpg.UniqueViolationError as e:
        raise HTTPException(status_code=409, detail="Session already exists") from e
    logger.info("Session {} created for user {}", body.id, current_user["id"])
    return _session_out(row)


@router.put("/{session_id}", response_model=SessionOut)
async def upsert_session(
    session_id: str,
    body: SessionUpsert,
    current_user: dict = Depends(get_current_user),
) -> SessionOut:
    """Create the session or refresh its title. Override fields are left alone."""
    row = await postgres.fetch_one(
        """INSERT INTO chat_sessions (id, user_id, title)
           VALUES ($1, $2, $3)
           ON CONFLICT (id) DO UPDATE
           SET title = EXCLUDED.title, updated_at = NOW()
           WHERE chat_sessions.user_id = EXCLUDED.user_id
           RETURNING *""",
        session_id,
        current_user["id"],
        limit_title(body.title),
    )
    if not row:
        # Conflicting id owned by someone else
        raise HTTPException(status_code=404, detail="Session not found")
    return _session_out(row)


@router.patch("/{session_id}", response_model=SessionOut)
async def rename_session(
    session_id: str,
    body: SessionRename,
    current_user: dict = Depends(get_current_user),
) -> SessionOut:
    title = limit_title(body.title.strip())
    if not title:
        raise HTTPException(status_code=400, detail="Title must not be blank")
    row = await postgres.fetch_one(
        """UPDATE chat_sessions SET title = $1, updated_at = NOW()
           WHERE id = $2 AND user_id = $3
           RETURNING *""",
        title,
        session_id,
        current_user["id"],
    )
    if not row:
        raise HTTPException(status_code=404, detail="Session not found")
    return _session_out(row)


@router.put("/{session_id}/override", response_model=SessionOut)
async def update_override(
    session_id: str,
    body: PromptOverrideIn,
    current_user: dict = Depends(get_current_user),
) -> SessionOut:
    row = await postgres.fetch_one(
        """UPDATE chat_sessions
           SET prompt_override = $1, knowledge_override = $2::jsonb, updated_at = NOW()
           WHERE id = $3 AND user_id = $4
           RETURNING *""",
        body.prompt_override,
        _knowledge_json(body.knowledge_override),
        session_id,
        current_user["id"],
    )
    if not row:
        raise HTTPException(status_code=404, detail="Session not found")
    logger.info(
        "Prompt override applied to session {}: main={} chars, knowledge_base={} items",
        session_id,
        len(body.prompt_override),
        len(body.knowledge_override),
    )
    return _session_out(row)


@router.delete("/{session_id}")
async def delete_session(
    session_id: str,
    current_user: dict = Depends(get_current_user),
):
    """
    Delete a session; its messages go with it (ON DELETE CASCADE).
    Deleting a session that was never stored, or is already gone, succeeds
    with deleted=false.
    """
    row = await postgres.fetch_one(
        "DELETE FROM chat_sessions WHERE id = $1 AND user_id = $2 RETURNING id",
        session_id,
        current_user["id"],
    )
    if not row:
        logger.debug("Session {} not found for user {}, nothing to delete", session_id, current_user["id"])
        return {"session_id": session_id, "deleted": False}
    logger.info("Session {} deleted by user {}", session_id, current_user["id"])
    return {"session_id": session_id, "deleted": True}


@router.get("/{session_id}/messages", response_model=MessagePage)
async def list_messages(
    session_id: str,
    before: str | None = None,
    limit: int | None = Query(None, ge=1, le=500),
    current_user: dict = Depends(get_current_user),
) -> MessagePage:
    """
    Without `before`/`limit`: the full history, oldest first.
    With `before`: up to `limit` (default MESSAGES_PER_PAGE) messages older
    than that message, oldest first, and whether even older ones exist.
    """
    await _owned_session_or_404(session_id, current_user["id"])

    if before is None and limit is None:
        rows = await postgres.fetch_all(
            """SELECT id, session_id, role, content, created_at FROM chat_messages
               WHERE session_id = $1 ORDER BY created_at ASC""",
            session_id,
        )
        return MessagePage(messages=[MessageOut(**dict(r)) for r in rows], has_more=False)

    page_size = limit or MESSAGES_PER_PAGE
    if before is None:
        messages, has_more = await _latest_messages(session_id, page_size)
        return MessagePage(messages=messages, has_more=has_more)

    anchor = await postgres.fetch_one(
        "SELECT created_at FROM chat_messages WHERE id = $1 AND session_id = $2",
        before,
        session_id,
    )
    if not anchor:
        return MessagePage(messages=[], has_more=False)

    rows = await postgres.fetch_all(
        """SELECT id, session_id, role, content, created_at FROM chat_messages
           WHERE session_id = $1 AND created_at < $2
           ORDER BY created_at DESC
           LIMIT $3""",
        session_id,
        anchor["created_at"],
        page_size + 1,
    )
    has_more = len(rows) > page_size
    messages = [MessageOut(**dict(r)) for r in rows[:page_size]]
    messages.reverse()
    return MessagePage(messages=messages, has_more=has_more)


@router.post("/{session_id}/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def add_message(
    session_id: str,
    body: MessageIn,
    current_user: dict = Depends(get_current_user),
) -> MessageOut:
    await _owned_session_or_404(session_id, current_user["id"])
    try:
        row = await postgres.fetch_one(
            """INSERT INTO chat_messages (id, session_id, role, content)
               VALUES ($1, $2, $3, $4)
               RETURNING id, session_id, role, content, created_at""",
            body.id,
            session_id,
            body.role,
            body.content,
        )
    except asyncpg.UniqueViolationError as e:
        raise HTTPException(status_code=409, detail="Message already exists") from e
    await postgres.execute(
        "UPDATE chat_sessions SET updated_at = NOW() WHERE id = $1",
        session_id,
    )
    return MessageOut(**dict(row))
