from __future__ import annotations

from datetime import datetime, timezone

import pytest

from chatdeck.api import admin as admin_api
from chatdeck.api import system as system_api
from chatdeck.core.context import DEFAULT_SYSTEM_PROMPT, prompt_cache

DEPLOYED_AT = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def saved(monkeypatch: pytest.MonkeyPatch) -> dict:
    state: dict = {"main": None, "items": [], "snapshots": []}

    async def fetch_main_prompt():
        return state["main"]

    async def fetch_knowledge_base():
        return state["items"]

    async def replace_global_prompt(main_prompt, items):
        state["main"] = main_prompt
        state["items"] = items

    async def save_deployment_snapshot(user_id, notes):
        if state["main"] is None:
            raise LookupError("No main prompt has been saved yet")
        state["snapshots"].append((user_id, notes))
        return {
            "id": len(state["snapshots"]),
            "deployed_at": DEPLOYED_AT,
            "main_prompt_length": len(state["main"]),
            "knowledge_base_items": len(state["items"]),
        }

    async def list_deployments(limit=50):
        return [
            {
                "id": 1,
                "deployed_at": DEPLOYED_AT,
                "main_prompt_length": 10,
                "knowledge_base_items": 0,
                "deployed_by": "System",
                "deployment_notes": None,
                "created_at": DEPLOYED_AT,
            }
        ]

    for name, fn in {
        "fetch_main_prompt": fetch_main_prompt,
        "fetch_knowledge_base": fetch_knowledge_base,
        "replace_global_prompt": replace_global_prompt,
        "save_deployment_snapshot": save_deployment_snapshot,
        "list_deployments": list_deployments,
    }.items():
        monkeypatch.setattr(admin_api.prompts, name, fn)
    return state


def test_non_admin_is_refused(client, saved) -> None:
    resp = client.put("/api/admin/prompt", json={"main_prompt_content": "x"})
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Unauthorized - Admin access required"
    assert saved["main"] is None


def test_prompt_components_default_when_nothing_saved(admin_client, saved) -> None:
    body = admin_client.get("/api/admin/prompt").json()
    assert body["main_prompt"] == DEFAULT_SYSTEM_PROMPT
    assert body["knowledge_base"] == []


def test_update_replaces_prompt_and_invalidates_cache(admin_client, saved) -> None:
    prompt_cache.store("old global prompt")

    resp = admin_client.put(
        "/api/admin/prompt",
        json={
            "main_prompt_content": "New prompt",
            "knowledge_base": [{"id": "k1", "name": "faq", "content": "x", "order_index": 1}],
        },
    )

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert saved["main"] == "New prompt"
    assert saved["items"][0].name == "faq"
    assert prompt_cache.stale_value is None


def test_blank_main_prompt_is_rejected(admin_client, saved) -> None:
    prompt_cache.store("kept")
    resp = admin_client.put("/api/admin/prompt", json={"main_prompt_content": "   "})
    assert resp.status_code == 400
    assert prompt_cache.stale_value == "kept"


def test_deploy_snapshots_and_invalidates(admin_client, saved) -> None:
    saved["main"] = "Live prompt"
    prompt_cache.store("old")

    resp = admin_client.post("/api/admin/deployments", json={"deployment_notes": "release 2"})

    assert resp.status_code == 200
    assert resp.json()["main_prompt_length"] == len("Live prompt")
    assert saved["snapshots"] == [(2, "release 2")]
    assert prompt_cache.stale_value is None


def test_deploy_without_prompt_conflicts(admin_client, saved) -> None:
    resp = admin_client.post("/api/admin/deployments")
    assert resp.status_code == 409


def test_deployment_history(admin_client, saved) -> None:
    body = admin_client.get("/api/admin/deployments").json()
    assert body["total_count"] == 1
    assert body["deployments"][0]["deployed_by"] == "System"


def test_health_reports_dependencies(client, monkeypatch: pytest.MonkeyPatch) -> None:
    async def check_postgres() -> bool:
        return True

    monkeypatch.setattr(system_api, "check_postgres", check_postgres)
    monkeypatch.setattr(system_api, "check_anthropic", lambda settings: False)

    body = client.get("/api/system/health").json()
    assert body["status"] == "error"
    assert body["dependencies"] == {"postgres": "connected", "anthropic": "missing api key"}
    assert body["prompt_cache"]["cached"] is False
