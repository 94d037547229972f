from __future__ import annotations

import asyncio

import pytest

from chatdeck.core import context
from chatdeck.core.prompt_cache import PromptCache
from chatdeck.models.chat import ChatTurn, KnowledgeItem


@pytest.fixture
def cache(monkeypatch: pytest.MonkeyPatch) -> PromptCache:
    fresh = PromptCache(ttl=300)
    monkeypatch.setattr(context, "prompt_cache", fresh)
    return fresh


def _item(name: str, order: int) -> KnowledgeItem:
    return KnowledgeItem(id=name, name=name, content=f"{name} body", order_index=order)


def test_render_orders_knowledge_items() -> None:
    text = context.render_system_prompt("Main", [_item("b", 2), _item("a", 1)])
    assert text == "Main\n\n---\n# Knowledge Base\n\n## a\na body\n\n## b\nb body\n\n"


def test_render_without_items_is_just_main_prompt() -> None:
    assert context.render_system_prompt("Main", []) == "Main"


def test_override_wins_and_skips_cache(cache: PromptCache, monkeypatch: pytest.MonkeyPatch) -> None:
    async def fail() -> str:
        raise AssertionError("global prompt must not be loaded")

    monkeypatch.setattr(context, "load_global_system_prompt", fail)
    text = asyncio.run(context.resolve_system_prompt("Be terse.", [_item("faq", 1)]))

    assert text.startswith("Be terse.")
    assert "## faq\nfaq body" in text
    assert cache.stale_value is None


def test_knowledge_only_override_uses_default_main_prompt(cache: PromptCache) -> None:
    text = asyncio.run(context.resolve_system_prompt(None, [_item("faq", 1)]))
    assert text.startswith(context.DEFAULT_SYSTEM_PROMPT)


def test_global_prompt_is_cached(cache: PromptCache, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[int] = []

    async def load() -> str:
        calls.append(1)
        return "global prompt"

    monkeypatch.setattr(context, "load_global_system_prompt", load)

    async def run() -> list[str]:
        return [await context.resolve_system_prompt(), await context.resolve_system_prompt()]

    assert asyncio.run(run()) == ["global prompt", "global prompt"]
    assert len(calls) == 1


def test_failed_refresh_serves_stale_value(monkeypatch: pytest.MonkeyPatch) -> None:
    now = [0.0]
    stale_cache = PromptCache(ttl=300, clock=lambda: now[0])
    stale_cache.store("yesterday's prompt")
    now[0] = 10_000.0
    monkeypatch.setattr(context, "prompt_cache", stale_cache)

    async def load() -> str:
        raise ConnectionError("db unreachable")

    monkeypatch.setattr(context, "load_global_system_prompt", load)
    assert asyncio.run(context.resolve_system_prompt()) == "yesterday's prompt"


def test_failed_refresh_without_cache_uses_default(
    cache: PromptCache, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def load() -> str:
        raise ConnectionError("db unreachable")

    monkeypatch.setattr(context, "load_global_system_prompt", load)
    assert asyncio.run(context.resolve_system_prompt()) == context.DEFAULT_SYSTEM_PROMPT


def test_load_global_prompt_falls_back_to_default_main(monkeypatch: pytest.MonkeyPatch) -> None:
    async def main_prompt() -> str | None:
        return None

    async def knowledge() -> list[KnowledgeItem]:
        return [_item("faq", 1)]

    monkeypatch.setattr(context.prompts, "fetch_main_prompt", main_prompt)
    monkeypatch.setattr(context.prompts, "fetch_knowledge_base", knowledge)

    text = asyncio.run(context.load_global_system_prompt())
    assert text.startswith(context.DEFAULT_SYSTEM_PROMPT)
    assert text.endswith("## faq\nfaq body\n\n")


def test_recent_messages_keeps_last_hundred() -> None:
    turns = [ChatTurn(role="user", content=str(i)) for i in range(130)]
    recent = context.select_recent_messages(turns)
    assert len(recent) == 100
    assert recent[0].content == "30"


def test_recent_messages_trims_large_history() -> None:
    turns = [ChatTurn(role="user", content="x" * 2000) for _ in range(80)]
    recent = context.select_recent_messages(turns)
    assert len(recent) == 50
