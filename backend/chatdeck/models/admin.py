from pydantic import BaseModel
from datetime import datetime

from chatdeck.models.chat import KnowledgeItem


class PromptComponentsOut(BaseModel):
    main_prompt: str
    knowledge_base: list[KnowledgeItem]
    timestamp: datetime


class GlobalPromptUpdate(BaseModel):
    main_prompt_content: str
    knowledge_base: list[KnowledgeItem] = []


class GlobalPromptUpdated(BaseModel):
    success: bool = True
    message: str
    updated_at: datetime


class DeploymentCreate(BaseModel):
    deployment_notes: str | None = None


class DeploymentOut(BaseModel):
    id: int
    deployed_at: datetime
    main_prompt_length: int
    knowledge_base_items: int


class DeploymentSummary(DeploymentOut):
    deployed_by: str
    deployment_notes: str | None = None
    created_at: datetime


class DeploymentHistoryOut(BaseModel):
    deployments: list[DeploymentSummary]
    total_count: int
