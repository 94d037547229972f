"""
Thin async client for the Anthropic Messages API using httpx.

open_stream() hands back the live upstream response so the chat route can pass
the server-sent events through untouched; complete() is the non-streaming call.
"""
import json
from dataclasses import dataclass
from typing import AsyncIterator

import httpx
from loguru import logger

from chatdeck.config import get_settings
from chatdeck.models.chat import ChatTurn

ANTHROPIC_VERSION = "2023-06-01"


class ConfigurationError(RuntimeError):
    """Raised when the proxy cannot run because credentials are missing."""


class UpstreamError(Exception):
    def __init__(self, status_code: int, reason: str, details: str):
        super().__init__(f"Claude API request failed: {status_code} {reason}")
        self.status_code = status_code
        self.reason = reason
        self.details = details


@dataclass
class UpstreamStream:
    """An open streaming response plus the client that owns its connection."""

    client: httpx.AsyncClient
    response: httpx.Response

    def aiter_raw(self) -> AsyncIterator[bytes]:
        return self.response.aiter_raw()

    async def aclose(self) -> None:
        await self.response.aclose()
        await self.client.aclose()


def build_payload(messages: list[ChatTurn], system_prompt: str, stream: bool) -> dict:
    settings = get_settings()
    return {
        "model": settings.anthropic_model,
        "max_tokens": settings.anthropic_max_tokens,
        "temperature": settings.anthropic_temperature,
        "messages": [m.model_dump() for m in messages],
        "system": system_prompt,
        "stream": stream,
    }


def _headers(stream: bool) -> dict[str, str]:
    settings = get_settings()
    if not settings.anthropic_api_key:
        raise ConfigurationError("Anthropic API key is not configured (ANTHROPIC_API_KEY)")
    headers = {
        "Content-Type": "application/json",
        "x-api-key": settings.anthropic_api_key,
        "anthropic-version": ANTHROPIC_VERSION,
    }
    if stream:
        headers["Accept"] = "text/event-stream"
    return headers


def _error_details(body: bytes) -> str:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return "Unknown error from Claude API"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return "Unknown error from Claude API"


async def open_stream(payload: dict) -> UpstreamStream:
    """
    Start a streaming request. The caller owns the returned stream and must
    aclose() it. Raises UpstreamError before any byte is forwarded when the
    upstream status is not 200.
    """
    settings = get_settings()
    headers = _headers(stream=True)
    client = httpx.AsyncClient(timeout=settings.anthropic_timeout)
    request = client.build_request(
        "POST", settings.anthropic_messages_url, json=payload, headers=headers
    )
    try:
        response = await client.send(request, stream=True)
    except Exception:
        await client.aclose()
        raise

    if response.status_code != 200:
        body = await response.aread()
        await response.aclose()
        await client.aclose()
        logger.error("Claude API error {}: {}", response.status_code, body)
        raise UpstreamError(response.status_code, response.reason_phrase, _error_details(body))

    return UpstreamStream(client=client, response=response)


async def complete(payload: dict) -> dict:
    """Non-streaming call; returns {content, usage, model}."""
    settings = get_settings()
    headers = _headers(stream=False)
    async with httpx.AsyncClient(timeout=settings.anthropic_timeout) as client:
        resp = await client.post(settings.anthropic_messages_url, json=payload, headers=headers)
        if resp.status_code != 200:
            logger.error("Claude API error {}: {}", resp.status_code, resp.text)
            raise UpstreamError(resp.status_code, resp.reason_phrase, _error_details(resp.content))
        data = resp.json()

    blocks = data.get("content") or []
    text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
    logger.info(
        "Claude API response: model={} usage={} content_length={}",
        data.get("model"),
        data.get("usage"),
        len(text),
    )
    return {"content": text, "usage": data.get("usage"), "model": data.get("model")}
