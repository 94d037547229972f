from pydantic import BaseModel, Field
from datetime import datetime

from chatdeck.models.chat import KnowledgeItem, Role


class SessionCreate(BaseModel):
    id: str
    title: str = "New Chat"
    prompt_override: str | None = None
    knowledge_override: list[KnowledgeItem] | None = None


class SessionUpsert(BaseModel):
    title: str


class SessionRename(BaseModel):
    title: str = Field(..., min_length=1)


class PromptOverrideIn(BaseModel):
    prompt_override: str
    knowledge_override: list[KnowledgeItem] = []


class MessageIn(BaseModel):
    id: str
    role: Role
    content: str


class MessageOut(BaseModel):
    id: str
    session_id: str
    role: Role
    content: str
    created_at: datetime


class SessionOut(BaseModel):
    id: str
    user_id: int
    title: str
    prompt_override: str | None = None
    knowledge_override: list[KnowledgeItem] | None = None
    created_at: datetime
    updated_at: datetime
    messages: list[MessageOut] = []
    has_more_messages: bool = False


class MessagePage(BaseModel):
    messages: list[MessageOut]
    has_more: bool
