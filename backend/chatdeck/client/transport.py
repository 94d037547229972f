"""
Streaming transport: sends a conversation to the chat proxy and yields the
assistant's text deltas as they arrive over server-sent events.
"""
import asyncio
import json
from typing import AsyncIterator, Protocol

import httpx
from loguru import logger

from chatdeck.client.state import PromptOverride

DONE_SENTINEL = "[DONE]"


class TransportError(Exception):
    """The proxy or the model failed; the message is safe to show to the user."""


class StreamingTransport(Protocol):
    def stream(
        self,
        messages: list[dict[str, str]],
        override: PromptOverride | None = None,
    ) -> AsyncIterator[str]: ...


def is_abort_error(error: BaseException) -> bool:
    """True for errors that mean the request was cancelled on purpose."""
    if isinstance(error, asyncio.CancelledError):
        return True
    if type(error).__name__ == "AbortError":
        return True
    message = str(error)
    return message == "Request was aborted" or "aborted" in message.lower()


def parse_sse_line(line: str) -> tuple[str, str | None]:
    """
    Classify one SSE line from the proxy.

    Returns ("delta", text), ("done", None), ("error", message) or
    ("skip", None) for anything that carries no text (comments, event names,
    pings, malformed JSON).
    """
    if not line.startswith("data: "):
        return "skip", None
    data = line[len("data: "):].strip()
    if data == DONE_SENTINEL:
        return "done", None
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        return "skip", None
    if not isinstance(event, dict):
        return "skip", None

    kind = event.get("type")
    if kind == "content_block_delta":
        text = (event.get("delta") or {}).get("text")
        if text:
            return "delta", text
    elif kind == "message_stop":
        return "done", None
    elif kind == "error":
        error = event.get("error") or {}
        return "error", error.get("message") or "Streaming error occurred"
    return "skip", None


class ProxyTransport:
    """StreamingTransport over POST /api/chat with stream=true."""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def stream(
        self,
        messages: list[dict[str, str]],
        override: PromptOverride | None = None,
    ) -> AsyncIterator[str]:
        body: dict = {"messages": messages, "stream": True}
        if override is not None:
            body["prompt_override"] = override.main_prompt_content
            body["knowledge_override"] = [item.model_dump() for item in override.knowledge_base]

        logger.debug("Streaming request: {} messages, override={}", len(messages), override is not None)

        async with self._client.stream("POST", "/api/chat", json=body) as resp:
            if resp.status_code != 200:
                await resp.aread()
                raise TransportError(
                    f"Proxy request failed: {resp.status_code} {resp.reason_phrase}. {_error_text(resp)}".rstrip()
                )

            async for line in resp.aiter_lines():
                kind, value = parse_sse_line(line)
                if kind == "delta":
                    yield value
                elif kind == "done":
                    return
                elif kind == "error":
                    raise TransportError(value)


def _error_text(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return ""
    if not isinstance(data, dict):
        return ""
    error = data.get("error") or data.get("detail") or ""
    return error if isinstance(error, str) else json.dumps(error)
