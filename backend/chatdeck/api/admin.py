from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger

from chatdeck.core import prompts
from chatdeck.core.context import DEFAULT_SYSTEM_PROMPT, prompt_cache
from chatdeck.core.security import require_admin
from chatdeck.models.admin import (
    DeploymentCreate,
    DeploymentHistoryOut,
    DeploymentOut,
    DeploymentSummary,
    GlobalPromptUpdate,
    GlobalPromptUpdated,
    PromptComponentsOut,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/prompt", response_model=PromptComponentsOut)
async def get_prompt_components(admin: dict = Depends(require_admin)) -> PromptComponentsOut:
    """The editable pieces of the global prompt, knowledge items in order."""
    main_prompt = await prompts.fetch_main_prompt()
    items = await prompts.fetch_knowledge_base()
    return PromptComponentsOut(
        main_prompt=main_prompt if main_prompt is not None else DEFAULT_SYSTEM_PROMPT,
        knowledge_base=items,
        timestamp=datetime.now(timezone.utc),
    )


@router.put("/prompt", response_model=GlobalPromptUpdated)
async def update_global_prompt(
    body: GlobalPromptUpdate,
    admin: dict = Depends(require_admin),
) -> GlobalPromptUpdated:
    if not body.main_prompt_content.strip():
        raise HTTPException(status_code=400, detail="Main prompt content is required")

    logger.info(
        "Global prompt update by {!r}: main={} chars, knowledge_base={} items",
        admin["username"],
        len(body.main_prompt_content),
        len(body.knowledge_base),
    )
    await prompts.replace_global_prompt(body.main_prompt_content, body.knowledge_base)
    prompt_cache.invalidate()

    return GlobalPromptUpdated(
        message="Global prompt and knowledge base updated successfully",
        updated_at=datetime.now(timezone.utc),
    )


@router.post("/deployments", response_model=DeploymentOut)
async def deploy(
    body: DeploymentCreate | None = None,
    admin: dict = Depends(require_admin),
) -> DeploymentOut:
    """Snapshot the current global prompt and make it live immediately."""
    notes = body.deployment_notes if body else None
    try:
        deployment = await prompts.save_deployment_snapshot(admin["id"], notes)
    except LookupError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    prompt_cache.invalidate()
    return DeploymentOut(**deployment)


@router.get("/deployments", response_model=DeploymentHistoryOut)
async def deployment_history(admin: dict = Depends(require_admin)) -> DeploymentHistoryOut:
    history = await prompts.list_deployments(limit=50)
    return DeploymentHistoryOut(
        deployments=[DeploymentSummary(**item) for item in history],
        total_count=len(history),
    )
