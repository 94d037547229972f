"""
Session store: the persistence side of the session manager, backed by the
/api/sessions routes. Every call is scoped server-side to the bearer token's
user.
"""
from typing import Protocol

import httpx
from loguru import logger

from chatdeck.client.state import Message, PromptOverride, Session
from chatdeck.models.sessions import MessagePage, SessionOut


class StoreError(Exception):
    """A persistence call failed; the message is safe to show to the user."""


class SessionStore(Protocol):
    async def list_sessions(self, recent: int) -> list[Session]: ...

    async def list_messages(
        self,
        session_id: str,
        before: str | None = None,
        limit: int | None = None,
    ) -> tuple[list[Message], bool]: ...

    async def upsert_session(self, session_id: str, title: str) -> None: ...

    async def create_session(
        self, session_id: str, title: str, override: PromptOverride | None = None
    ) -> None: ...

    async def update_override(self, session_id: str, override: PromptOverride) -> None: ...

    async def rename_session(self, session_id: str, title: str) -> None: ...

    async def delete_session(self, session_id: str) -> None: ...

    async def insert_message(self, session_id: str, message: Message) -> None: ...


def _raise_for_status(resp: httpx.Response, action: str) -> None:
    if resp.is_success:
        return
    try:
        data = resp.json()
    except ValueError:
        data = None
    detail = data.get("detail") if isinstance(data, dict) else None
    logger.warning("Session store {} failed: {} {}", action, resp.status_code, detail)
    raise StoreError(f"Failed to {action}: {resp.status_code} {detail or resp.reason_phrase}")


class ApiSessionStore:
    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def list_sessions(self, recent: int) -> list[Session]:
        resp = await self._client.get("/api/sessions", params={"recent": recent})
        _raise_for_status(resp, "load sessions")
        return [Session.from_api(SessionOut(**row)) for row in resp.json()]

    async def list_messages(
        self,
        session_id: str,
        before: str | None = None,
        limit: int | None = None,
    ) -> tuple[list[Message], bool]:
        params = {}
        if before is not None:
            params["before"] = before
        if limit is not None:
            params["limit"] = limit
        resp = await self._client.get(f"/api/sessions/{session_id}/messages", params=params)
        _raise_for_status(resp, "load messages")
        page = MessagePage(**resp.json())
        return [Message.from_api(m) for m in page.messages], page.has_more

    async def upsert_session(self, session_id: str, title: str) -> None:
        resp = await self._client.put(f"/api/sessions/{session_id}", json={"title": title})
        _raise_for_status(resp, "save session")

    async def create_session(
        self, session_id: str, title: str, override: PromptOverride | None = None
    ) -> None:
        body: dict = {"id": session_id, "title": title}
        if override is not None:
            body["prompt_override"] = override.main_prompt_content
            body["knowledge_override"] = [item.model_dump() for item in override.knowledge_base]
        resp = await self._client.post("/api/sessions", json=body)
        _raise_for_status(resp, "create session")

    async def update_override(self, session_id: str, override: PromptOverride) -> None:
        resp = await self._client.put(
            f"/api/sessions/{session_id}/override",
            json={
                "prompt_override": override.main_prompt_content,
                "knowledge_override": [item.model_dump() for item in override.knowledge_base],
            },
        )
        _raise_for_status(resp, "apply prompt override")

    async def rename_session(self, session_id: str, title: str) -> None:
        resp = await self._client.patch(f"/api/sessions/{session_id}", json={"title": title})
        _raise_for_status(resp, "rename session")

    async def delete_session(self, session_id: str) -> None:
        resp = await self._client.delete(f"/api/sessions/{session_id}")
        if resp.status_code == 404:
            logger.debug("Session {} was never stored, nothing to delete", session_id)
            return
        _raise_for_status(resp, "delete session")

    async def insert_message(self, session_id: str, message: Message) -> None:
        resp = await self._client.post(
            f"/api/sessions/{session_id}/messages",
            json={"id": message.id, "role": message.role, "content": message.content},
        )
        _raise_for_status(resp, "save message")
