import asyncio

from loguru import logger

from chatdeck.config import get_settings
from chatdeck.core import prompts
from chatdeck.core.prompt_cache import PromptCache
from chatdeck.models.chat import ChatTurn, KnowledgeItem

DEFAULT_SYSTEM_PROMPT = (
    "You are Claude, a helpful AI assistant created by Anthropic. "
    "Please respond naturally and helpfully to the user's questions."
)

KNOWLEDGE_BASE_HEADER = "\n\n---\n# Knowledge Base\n\n"

# Conversation window sent upstream
MAX_HISTORY_MESSAGES = 100
TRIMMED_HISTORY_MESSAGES = 50
MAX_HISTORY_CHARS = 150_000

prompt_cache = PromptCache(ttl=get_settings().system_prompt_cache_ttl)


def render_system_prompt(main_prompt: str, items: list[KnowledgeItem] | None = None) -> str:
    """Main prompt followed by a Knowledge Base section, items in ascending order_index."""
    text = main_prompt
    if items:
        text += KNOWLEDGE_BASE_HEADER
        for item in sorted(items, key=lambda i: i.order_index):
            text += f"## {item.name}\n{item.content}\n\n"
    return text


async def load_global_system_prompt() -> str:
    """Fetch main prompt and knowledge base concurrently and render them."""
    main_prompt, items = await asyncio.gather(
        prompts.fetch_main_prompt(),
        prompts.fetch_knowledge_base(),
    )
    text = render_system_prompt(main_prompt or DEFAULT_SYSTEM_PROMPT, items)
    logger.info(
        "[context] global system prompt assembled: main={} chars, knowledge_base={} items, total={} chars",
        len(main_prompt or ""),
        len(items),
        len(text),
    )
    return text


async def resolve_system_prompt(
    prompt_override: str | None = None,
    knowledge_override: list[KnowledgeItem] | None = None,
) -> str:
    """
    Pick the system instruction for one chat request.

    A session override (either field present) wins outright and never touches
    the cache. Otherwise the cached global prompt is used, refreshed from the
    database when older than the TTL. If the refresh fails the last cached
    value is served even when expired, and with nothing cached the hardcoded
    default is returned. Never raises.
    """
    if prompt_override is not None or knowledge_override is not None:
        logger.debug(
            "[context] using session override: main={} knowledge_base={} items",
            bool(prompt_override),
            len(knowledge_override or []),
        )
        return render_system_prompt(prompt_override or DEFAULT_SYSTEM_PROMPT, knowledge_override)

    try:
        return await prompt_cache.get_or_refresh(load_global_system_prompt)
    except Exception as e:
        stale = prompt_cache.stale_value
        if stale:
            logger.warning(
                "[context] system prompt refresh failed ({}), serving stale cache aged {}s",
                e,
                round(prompt_cache.age()),
            )
            return stale
        logger.error(f"[context] system prompt refresh failed, using default: {e}")
        return DEFAULT_SYSTEM_PROMPT


def select_recent_messages(messages: list[ChatTurn]) -> list[ChatTurn]:
    """
    Keep the last MAX_HISTORY_MESSAGES turns; when those exceed MAX_HISTORY_CHARS
    of content, keep only the last TRIMMED_HISTORY_MESSAGES.
    """
    recent = messages[-MAX_HISTORY_MESSAGES:]
    total_chars = sum(len(m.content) for m in recent)
    if total_chars > MAX_HISTORY_CHARS:
        logger.debug(
            f"[context] history of {total_chars} chars over budget, trimming to {TRIMMED_HISTORY_MESSAGES}"
        )
        return recent[-TRIMMED_HISTORY_MESSAGES:]
    return recent
