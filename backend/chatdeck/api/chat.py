from datetime import datetime, timezone

import httpx
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from starlette.background import BackgroundTask

from chatdeck.core import anthropic
from chatdeck.core.context import prompt_cache, resolve_system_prompt, select_recent_messages
from chatdeck.core.security import get_current_user
from chatdeck.models.chat import ChatCompletionOut, ChatRequest, SystemPromptOut

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("")
async def chat(body: ChatRequest, current_user: dict = Depends(get_current_user)):
    """
    Forward a conversation to Claude with the server-assembled system prompt.

    stream=true passes the upstream server-sent events through unchanged;
    otherwise the full reply is returned as JSON.
    """
    system_prompt = await resolve_system_prompt(body.prompt_override, body.knowledge_override)
    messages = select_recent_messages(body.messages)
    payload = anthropic.build_payload(messages, system_prompt, stream=body.stream)

    logger.info(
        "Chat request from user {}: messages={}/{} system_prompt={} chars stream={} override={}",
        current_user["id"],
        len(messages),
        len(body.messages),
        len(system_prompt),
        body.stream,
        body.prompt_override is not None or body.knowledge_override is not None,
    )

    try:
        if body.stream:
            upstream = await anthropic.open_stream(payload)
            return StreamingResponse(
                upstream.aiter_raw(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                    "Connection": "keep-alive",
                },
                background=BackgroundTask(upstream.aclose),
            )
        result = await anthropic.complete(payload)
        return ChatCompletionOut(**result)

    except anthropic.ConfigurationError as e:
        logger.error("Chat proxy misconfigured: {}", e)
        raise HTTPException(status_code=500, detail=str(e)) from e
    except anthropic.UpstreamError as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"error": str(e), "details": e.details},
        )
    except httpx.HTTPError as e:
        logger.exception("Cannot reach Claude API: {}", e)
        raise HTTPException(status_code=502, detail="Cannot reach Claude API") from e


@router.get("/system-prompt", response_model=SystemPromptOut)
async def get_system_prompt(current_user: dict = Depends(get_current_user)) -> SystemPromptOut:
    """The global system prompt as the proxy would send it right now."""
    system_prompt = await resolve_system_prompt()
    return SystemPromptOut(
        system_prompt=system_prompt,
        timestamp=datetime.now(timezone.utc),
        prompt_length=len(system_prompt),
        cache=prompt_cache.status(),
    )
