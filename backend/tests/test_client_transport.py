from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from chatdeck.client.state import PromptOverride
from chatdeck.client.transport import (
    ProxyTransport,
    TransportError,
    is_abort_error,
    parse_sse_line,
)
from chatdeck.models.chat import KnowledgeItem


def _sse(*events: object) -> bytes:
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()


def _delta(text: str) -> dict:
    return {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}


async def _collect(transport: ProxyTransport, override: PromptOverride | None = None) -> list[str]:
    chunks = []
    async for chunk in transport.stream([{"role": "user", "content": "Hello"}], override):
        chunks.append(chunk)
    return chunks


def test_parse_sse_line_kinds() -> None:
    assert parse_sse_line("event: ping") == ("skip", None)
    assert parse_sse_line("data: [DONE]") == ("done", None)
    assert parse_sse_line("data: {not json") == ("skip", None)
    assert parse_sse_line('data: {"type": "message_stop"}') == ("done", None)
    assert parse_sse_line("data: " + json.dumps(_delta("Hi"))) == ("delta", "Hi")
    assert parse_sse_line('data: {"type": "error", "error": {"message": "overloaded"}}') == (
        "error",
        "overloaded",
    )


def test_stream_yields_deltas_and_sends_override() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        body = _sse({"type": "message_start"}, _delta("Hi"), _delta(" there"), "[DONE]", _delta("late"))
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    override = PromptOverride(
        main_prompt_content="Be terse.",
        knowledge_base=[KnowledgeItem(id="k1", name="faq", content="x", order_index=1)],
    )

    async def run() -> list[str]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
            return await _collect(ProxyTransport(client), override)

    assert asyncio.run(run()) == ["Hi", " there"]
    assert seen["path"] == "/api/chat"
    assert seen["body"]["stream"] is True
    assert seen["body"]["prompt_override"] == "Be terse."
    assert seen["body"]["knowledge_override"][0]["name"] == "faq"


def test_stream_without_override_omits_override_fields() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=_sse({"type": "message_stop"}))

    async def run() -> list[str]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
            return await _collect(ProxyTransport(client))

    assert asyncio.run(run()) == []
    assert "prompt_override" not in seen["body"]


def test_non_200_raises_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": "rate limited"})

    async def run() -> list[str]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
            return await _collect(ProxyTransport(client))

    with pytest.raises(TransportError, match="Proxy request failed: 429 Too Many Requests. rate limited"):
        asyncio.run(run())


def test_upstream_error_event_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse(_delta("par"), {"type": "error", "error": {"message": "overloaded"}}))

    async def run() -> list[str]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
            return await _collect(ProxyTransport(client))

    with pytest.raises(TransportError, match="overloaded"):
        asyncio.run(run())


def test_is_abort_error_signatures() -> None:
    class AbortError(Exception):
        pass

    assert is_abort_error(asyncio.CancelledError())
    assert is_abort_error(AbortError("x"))
    assert is_abort_error(RuntimeError("Request was aborted"))
    assert is_abort_error(RuntimeError("The operation was aborted."))
    assert not is_abort_error(RuntimeError("Proxy request failed: 500"))
