"""
Global prompt storage: the main prompt row and the ordered knowledge base
items in prompts_and_knowledge_base, plus deployment snapshots of both.
"""
import json

from loguru import logger

from chatdeck.db import postgres
from chatdeck.models.chat import KnowledgeItem

MAIN_PROMPT_ID = "main_prompt"


def _knowledge_from_rows(rows) -> list[KnowledgeItem]:
    return [
        KnowledgeItem(
            id=r["id"],
            name=r["name"],
            content=r["content"],
            order_index=r["order_index"],
        )
        for r in rows
    ]


async def fetch_main_prompt() -> str | None:
    row = await postgres.fetch_one(
        """SELECT content FROM prompts_and_knowledge_base
           WHERE type = 'main_prompt' AND name = 'main_prompt'""",
    )
    return row["content"] if row else None


async def fetch_knowledge_base() -> list[KnowledgeItem]:
    rows = await postgres.fetch_all(
        """SELECT id, name, content, order_index FROM prompts_and_knowledge_base
           WHERE type = 'knowledge_base'
           ORDER BY order_index ASC""",
    )
    return _knowledge_from_rows(rows)


async def replace_global_prompt(main_prompt: str, items: list[KnowledgeItem]) -> None:
    """
    Upsert the main prompt and replace the whole knowledge base in one
    transaction. Items without an order_index take their 1-based position.
    """
    async with postgres.transaction() as conn:
        await conn.execute(
            """INSERT INTO prompts_and_knowledge_base (id, name, content, type, order_index)
               VALUES ($1, 'main_prompt', $2, 'main_prompt', 0)
               ON CONFLICT (id) DO UPDATE
               SET content = EXCLUDED.content, updated_at = NOW()""",
            MAIN_PROMPT_ID,
            main_prompt,
        )
        await conn.execute(
            "DELETE FROM prompts_and_knowledge_base WHERE type = 'knowledge_base'"
        )
        if items:
            await conn.executemany(
                """INSERT INTO prompts_and_knowledge_base (id, name, content, type, order_index)
                   VALUES ($1, $2, $3, 'knowledge_base', $4)""",
                [
                    (item.id, item.name, item.content, item.order_index or index + 1)
                    for index, item in enumerate(items)
                ],
            )
    logger.info(
        "Global prompt replaced: main={} chars, knowledge_base={} items",
        len(main_prompt),
        len(items),
    )


async def save_deployment_snapshot(user_id: int, notes: str | None) -> dict:
    """Copy the current global prompt into deployment_history and return the new row."""
    main_prompt = await fetch_main_prompt()
    if main_prompt is None:
        raise LookupError("No main prompt has been saved yet")
    items = await fetch_knowledge_base()

    row = await postgres.fetch_one(
        """INSERT INTO deployment_history
               (main_prompt_content, knowledge_base_snapshot, deployed_by_user_id, deployment_notes)
           VALUES ($1, $2::jsonb, $3, $4)
           RETURNING id, deployed_at""",
        main_prompt,
        json.dumps([item.model_dump() for item in items]),
        user_id,
        notes,
    )
    logger.info("Deployment snapshot {} saved by user {}", row["id"], user_id)
    return {
        "id": row["id"],
        "deployed_at": row["deployed_at"],
        "main_prompt_length": len(main_prompt),
        "knowledge_base_items": len(items),
    }


async def list_deployments(limit: int = 50) -> list[dict]:
    rows = await postgres.fetch_all(
        """SELECT d.id, d.deployed_at, d.main_prompt_content, d.knowledge_base_snapshot,
                  d.deployed_by_user_id, d.deployment_notes, d.created_at,
                  u.username AS deployed_by_username
           FROM deployment_history d
           LEFT JOIN users u ON u.id = d.deployed_by_user_id
           ORDER BY d.deployed_at DESC
           LIMIT $1""",
        limit,
    )

    history = []
    for r in rows:
        snapshot = r["knowledge_base_snapshot"]
        if isinstance(snapshot, str):
            snapshot = json.loads(snapshot)
        if r["deployed_by_user_id"] is None:
            deployed_by = "System"
        else:
            deployed_by = r["deployed_by_username"] or "Unknown User"
        history.append(
            {
                "id": r["id"],
                "deployed_at": r["deployed_at"],
                "main_prompt_length": len(r["main_prompt_content"] or ""),
                "knowledge_base_items": len(snapshot) if isinstance(snapshot, list) else 0,
                "deployed_by": deployed_by,
                "deployment_notes": r["deployment_notes"],
                "created_at": r["created_at"],
            }
        )
    return history
