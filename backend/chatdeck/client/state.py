"""
In-memory chat state for the session manager.

Everything here is replaced, never mutated: a transition builds a new
ChatState from the previous one. Helpers below are pure functions over
session lists so they can be composed inside a single transition.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import BaseModel

from chatdeck.models.chat import KnowledgeItem, Role
from chatdeck.models.sessions import MessageOut, SessionOut

MAX_TITLE_LENGTH = 50
HEADER_TITLE_LENGTH = 40
HISTORY_TITLE_LENGTH = 30
NEW_CHAT_TITLE = "New Chat"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Message(BaseModel):
    id: str
    role: Role
    content: str
    timestamp: datetime

    @classmethod
    def create(cls, role: Role, content: str) -> "Message":
        return cls(id=new_id(), role=role, content=content, timestamp=utcnow())

    @classmethod
    def from_api(cls, row: MessageOut) -> "Message":
        return cls(id=row.id, role=row.role, content=row.content, timestamp=row.created_at)


class PromptOverride(BaseModel):
    main_prompt_content: str
    knowledge_base: list[KnowledgeItem] = []


class Session(BaseModel):
    id: str
    user_id: int
    title: str = NEW_CHAT_TITLE
    messages: list[Message] = []
    created_at: datetime
    updated_at: datetime
    has_more_messages: bool = False
    override: PromptOverride | None = None

    @classmethod
    def from_api(cls, row: SessionOut) -> "Session":
        override = None
        if row.prompt_override is not None or row.knowledge_override is not None:
            override = PromptOverride(
                main_prompt_content=row.prompt_override or "",
                knowledge_base=row.knowledge_override or [],
            )
        return cls(
            id=row.id,
            user_id=row.user_id,
            title=row.title,
            messages=[Message.from_api(m) for m in row.messages],
            created_at=row.created_at,
            updated_at=row.updated_at,
            has_more_messages=row.has_more_messages,
            override=override,
        )

    def last_activity(self) -> datetime:
        if self.messages:
            return self.messages[-1].timestamp
        return self.created_at


class ChatState(BaseModel):
    sessions: list[Session] = []
    current_session_id: str | None = None
    error: str | None = None


# ── Titles ──────────────────────────────────────────────────────────────────────

def title_from_message(content: str) -> str:
    """Persisted title: first MAX_TITLE_LENGTH characters, no ellipsis."""
    return content[:MAX_TITLE_LENGTH]


def display_title(title: str, limit: int = HISTORY_TITLE_LENGTH) -> str:
    """Title as shown in the UI: cut at `limit` with a trailing '...'."""
    if len(title) <= limit:
        return title
    return title[:limit] + "..."


# ── Session list helpers ────────────────────────────────────────────────────────

def find_session(sessions: list[Session], session_id: str | None) -> Session | None:
    if session_id is None:
        return None
    return next((s for s in sessions if s.id == session_id), None)


def update_session(sessions: list[Session], session_id: str, **changes) -> list[Session]:
    return [s.model_copy(update=changes) if s.id == session_id else s for s in sessions]


def set_message_content(
    sessions: list[Session], session_id: str, message_id: str, content: str
) -> list[Session]:
    result = []
    for s in sessions:
        if s.id == session_id:
            messages = [
                m.model_copy(update={"content": content}) if m.id == message_id else m
                for m in s.messages
            ]
            s = s.model_copy(update={"messages": messages, "updated_at": utcnow()})
        result.append(s)
    return result


def sort_sessions(sessions: list[Session]) -> list[Session]:
    """Most recent message first; sessions without messages use their creation time."""
    return sorted(sessions, key=lambda s: s.last_activity(), reverse=True)


@dataclass(frozen=True)
class OptimisticAppend:
    """
    Tentative append of messages to a session, with its inverse.

    apply() adds the messages (creating the session at the top of the list if
    it is not there yet, and titling it when it had no messages). revert()
    removes only the ids in rollback_ids, so the user's own message survives a
    failed send.
    """

    session_id: str
    user_id: int
    messages: tuple[Message, ...]
    title: str
    rollback_ids: frozenset[str]

    def apply(self, sessions: list[Session]) -> list[Session]:
        now = utcnow()
        existing = find_session(sessions, self.session_id)
        if existing is None:
            created = Session(
                id=self.session_id,
                user_id=self.user_id,
                title=self.title,
                messages=list(self.messages),
                created_at=now,
                updated_at=now,
            )
            return [created, *sessions]

        return update_session(
            sessions,
            self.session_id,
            messages=[*existing.messages, *self.messages],
            title=self.title if not existing.messages else existing.title,
            updated_at=now,
        )

    def revert(self, sessions: list[Session]) -> list[Session]:
        existing = find_session(sessions, self.session_id)
        if existing is None:
            return sessions
        return update_session(
            sessions,
            self.session_id,
            messages=[m for m in existing.messages if m.id not in self.rollback_ids],
        )
