from pydantic import BaseModel

from chatdeck.models.chat import PromptCacheStatus


class HealthResponse(BaseModel):
    status: str
    version: str
    dependencies: dict[str, str]
    prompt_cache: PromptCacheStatus
