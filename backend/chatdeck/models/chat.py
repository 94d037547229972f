from pydantic import BaseModel, Field
from typing import Literal
from datetime import datetime


Role = Literal["user", "assistant"]


class KnowledgeItem(BaseModel):
    id: str
    name: str
    content: str
    order_index: int = 0


class ChatTurn(BaseModel):
    role: Role
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatTurn] = Field(..., min_length=1)
    stream: bool = False
    prompt_override: str | None = None
    knowledge_override: list[KnowledgeItem] | None = None


class ChatCompletionOut(BaseModel):
    content: str
    usage: dict | None = None
    model: str | None = None


class PromptCacheStatus(BaseModel):
    cached: bool
    valid: bool
    age: int
    ttl: int
    size: int


class SystemPromptOut(BaseModel):
    system_prompt: str
    timestamp: datetime
    prompt_length: int
    cache: PromptCacheStatus
