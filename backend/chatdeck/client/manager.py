"""
ChatSessionManager: the client-side owner of chat sessions.

It keeps an immutable ChatState, runs one generation task per session
through a RequestRegistry, and talks to the backend only through a
SessionStore and a StreamingTransport, so any implementation of either can
be plugged in (HTTP adapters in production, fakes in tests).
"""
import asyncio
from typing import Callable, Iterable

from loguru import logger

from chatdeck.client.registry import RequestRegistry, RequestScope
from chatdeck.client.state import (
    HEADER_TITLE_LENGTH,
    MAX_TITLE_LENGTH,
    NEW_CHAT_TITLE,
    ChatState,
    Message,
    OptimisticAppend,
    PromptOverride,
    Session,
    display_title,
    find_session,
    new_id,
    set_message_content,
    sort_sessions,
    title_from_message,
    update_session,
    utcnow,
)
from chatdeck.client.store import SessionStore
from chatdeck.client.transport import StreamingTransport, is_abort_error
from chatdeck.models.chat import KnowledgeItem

INITIAL_MESSAGES_LOAD = 20
MESSAGES_PER_PAGE = 50

DEBUG_COMMAND = "/show-system-prompt"
DEBUG_TITLE = "System Prompt Debug"
DEBUG_REPORT = (
    "**Current system prompt:**\n\n"
    "```\n"
    "The system prompt is assembled on the server for every request.\n"
    "If this session has a playground override, that override is used;\n"
    "otherwise the global prompt and knowledge base from the database are used.\n"
    "```"
)
OVERRIDE_SESSION_TITLE = "NEW CHAT"

Listener = Callable[[ChatState], None]


class ChatSessionManager:
    def __init__(
        self,
        store: SessionStore,
        transport: StreamingTransport,
        user_id: int | None = None,
        initial_messages_load: int = INITIAL_MESSAGES_LOAD,
        messages_per_page: int = MESSAGES_PER_PAGE,
    ):
        self.store = store
        self.transport = transport
        self.user_id = user_id
        self.initial_messages_load = initial_messages_load
        self.messages_per_page = messages_per_page
        self.requests = RequestRegistry()
        self._state = ChatState()
        self._listeners: list[Listener] = []

    # ── State ───────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ChatState:
        return self._state

    @property
    def sessions(self) -> list[Session]:
        return self._state.sessions

    @property
    def current_session_id(self) -> str | None:
        return self._state.current_session_id

    @property
    def error(self) -> str | None:
        return self._state.error

    @property
    def current_session(self) -> Session | None:
        """The selected session; a blank placeholder while a fresh id has nothing in it yet."""
        session_id = self._state.current_session_id
        if session_id is None:
            return None
        session = find_session(self._state.sessions, session_id)
        if session is not None:
            return session
        if self.user_id is None:
            return None
        now = utcnow()
        return Session(
            id=session_id,
            user_id=self.user_id,
            title=NEW_CHAT_TITLE,
            created_at=now,
            updated_at=now,
        )

    @property
    def current_title(self) -> str:
        session = self.current_session
        return display_title(session.title if session else NEW_CHAT_TITLE, HEADER_TITLE_LENGTH)

    @property
    def is_loading(self) -> bool:
        return self.requests.is_active(self._state.current_session_id)

    @property
    def is_streaming_content(self) -> bool:
        scope = self.requests.get(self._state.current_session_id)
        return scope is not None and scope.streaming

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, transition: Callable[[ChatState], ChatState]) -> None:
        self._state = transition(self._state)
        self._notify()

    def _update_sessions(self, transition: Callable[[list[Session]], list[Session]]) -> None:
        self._set_state(lambda s: s.model_copy(update={"sessions": transition(s.sessions)}))

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Chat state listener failed")

    def _set_error(self, message: str | None) -> None:
        self._set_state(lambda s: s.model_copy(update={"error": message}))

    def clear_error(self) -> None:
        self._set_error(None)

    # ── Loading ─────────────────────────────────────────────────────────────────

    async def set_user(self, user_id: int | None) -> None:
        """Switch the authenticated user: drop every request and reload."""
        self.requests.cancel_all()
        self.user_id = user_id
        self._set_state(lambda _: ChatState())
        if user_id is not None:
            await self.load_sessions()

    async def load_sessions(self) -> None:
        if self.user_id is None:
            return
        try:
            sessions = await self.store.list_sessions(self.initial_messages_load)
        except Exception as e:
            logger.error(f"Failed to load sessions: {e}")
            self._set_error("Failed to load chat sessions.")
            return

        sessions = sort_sessions(sessions)
        logger.info(f"Loaded {len(sessions)} sessions for user {self.user_id}")

        def transition(state: ChatState) -> ChatState:
            current = state.current_session_id
            if current is None and sessions:
                current = sessions[0].id
            return state.model_copy(update={"sessions": sessions, "current_session_id": current})

        self._set_state(transition)

    async def load_more_messages(self) -> None:
        """Prepend the next page of older messages to the selected session."""
        session = find_session(self._state.sessions, self._state.current_session_id)
        if session is None or not session.has_more_messages:
            return

        before = session.messages[0].id if session.messages else None
        try:
            older, has_more = await self.store.list_messages(
                session.id, before=before, limit=self.messages_per_page
            )
        except Exception as e:
            logger.error(f"Failed to load more messages for {session.id}: {e}")
            self._set_error("Failed to load earlier messages.")
            return

        def transition(sessions: list[Session]) -> list[Session]:
            latest = find_session(sessions, session.id)
            if latest is None:
                return sessions
            known = {m.id for m in latest.messages}
            fresh = [m for m in older if m.id not in known]
            return update_session(
                sessions,
                session.id,
                messages=[*fresh, *latest.messages],
                has_more_messages=has_more,
            )

        self._update_sessions(transition)

    async def load_full_session_messages(self, session_id: str) -> None:
        try:
            messages, _ = await self.store.list_messages(session_id)
        except Exception as e:
            logger.error(f"Failed to load messages for {session_id}: {e}")
            self._set_error("Failed to load messages.")
            return
        self._update_sessions(
            lambda sessions: update_session(
                sessions, session_id, messages=messages, has_more_messages=False
            )
        )

    # ── Selection ───────────────────────────────────────────────────────────────

    def new_session(self) -> str:
        """Select a fresh id; the session only exists once something is sent or configured in it."""
        session_id = new_id()
        self._set_state(
            lambda s: s.model_copy(update={"current_session_id": session_id, "error": None})
        )
        return session_id

    def switch_session(self, session_id: str) -> None:
        self._set_state(
            lambda s: s.model_copy(update={"current_session_id": session_id, "error": None})
        )

    # ── Sending ─────────────────────────────────────────────────────────────────

    async def send(self, content: str) -> None:
        """
        Send a user message in the selected session and stream the reply.

        Returns once the generation has finished, failed, or been cancelled
        by stop(), delete_session() or a newer send() in the same session.
        Cancelling the caller itself still propagates.
        """
        text = content.strip()
        if not text or self.user_id is None:
            return

        session_id = self._state.current_session_id
        if session_id is None:
            session_id = new_id()
            self._set_state(lambda s: s.model_copy(update={"current_session_id": session_id}))
        else:
            await self._supersede(session_id)

        prior = find_session(self._state.sessions, session_id)
        user_message = Message.create("user", text)
        placeholder = Message.create("assistant", "")
        is_new = prior is None or not prior.messages

        if text == DEBUG_COMMAND:
            await self._send_debug(session_id, prior, user_message, placeholder)
            return

        title = title_from_message(text) if is_new else prior.title
        patch = OptimisticAppend(
            session_id=session_id,
            user_id=self.user_id,
            messages=(user_message, placeholder),
            title=title,
            rollback_ids=frozenset({placeholder.id}),
        )
        scope = self.requests.open(session_id, placeholder.id)
        self._set_state(
            lambda s: s.model_copy(update={"sessions": patch.apply(s.sessions), "error": None})
        )

        history = [
            {"role": m.role, "content": m.content}
            for m in (prior.messages if prior else [])
            if m.content.strip()
        ]
        history.append({"role": "user", "content": text})
        override = prior.override if prior else None

        task = asyncio.create_task(
            self._generate(scope, patch, user_message, history, override)
        )
        scope.task = task
        await self._await_generation(task)

    async def _supersede(self, session_id: str) -> None:
        """Cancel the session's running request and wait until it has settled its writes."""
        previous = self.requests.get(session_id)
        if not self.requests.cancel(session_id):
            return
        if previous.task is not None and not previous.task.done():
            await asyncio.wait({previous.task})

    async def _await_generation(self, task: asyncio.Task) -> None:
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                task.cancel()
                raise

    async def _generate(
        self,
        scope: RequestScope,
        patch: OptimisticAppend,
        user_message: Message,
        history: list[dict[str, str]],
        override: PromptOverride | None,
    ) -> None:
        session_id = scope.session_id
        text = ""
        try:
            await self.store.upsert_session(session_id, patch.title)
            await self.store.insert_message(session_id, user_message)

            async for chunk in self.transport.stream(history, override):
                text += chunk
                scope.streaming = True
                self._update_sessions(
                    lambda sessions: set_message_content(sessions, session_id, scope.message_id, text)
                )
        except asyncio.CancelledError:
            self.requests.release(scope)
            if text and not scope.discard:
                await self._persist_reply(session_id, scope.message_id, text)
            self._notify()
            raise
        except Exception as e:
            self.requests.release(scope)
            if is_abort_error(e):
                logger.info(f"Request {scope.request_id} for session {session_id} aborted")
                self._notify()
                return
            logger.error(f"Chat request failed for session {session_id}: {e}")
            message = str(e) or "Failed to send message."

            def rollback(state: ChatState) -> ChatState:
                changes: dict = {"sessions": patch.revert(state.sessions)}
                if state.current_session_id == session_id:
                    changes["error"] = message
                return state.model_copy(update=changes)

            self._set_state(rollback)
            return

        self.requests.release(scope)
        await self._persist_reply(session_id, scope.message_id, text)
        self._update_sessions(sort_sessions)

    async def _persist_reply(self, session_id: str, message_id: str, text: str) -> None:
        reply = Message(id=message_id, role="assistant", content=text, timestamp=utcnow())
        try:
            await self.store.insert_message(session_id, reply)
        except Exception as e:
            logger.error(f"Failed to save assistant message {message_id}: {e}")

    async def _send_debug(
        self,
        session_id: str,
        prior: Session | None,
        user_message: Message,
        placeholder: Message,
    ) -> None:
        is_new = prior is None or not prior.messages
        title = DEBUG_TITLE if is_new else prior.title
        patch = OptimisticAppend(
            session_id=session_id,
            user_id=self.user_id,
            messages=(user_message, placeholder),
            title=title,
            rollback_ids=frozenset({placeholder.id}),
        )
        # No task: the scope only marks the session as loading.
        scope = self.requests.open(session_id, placeholder.id)
        self._set_state(
            lambda s: s.model_copy(update={"sessions": patch.apply(s.sessions), "error": None})
        )

        failure: Exception | None = None
        try:
            await self.store.upsert_session(session_id, title)
            await self.store.insert_message(session_id, user_message)
            report = placeholder.model_copy(update={"content": DEBUG_REPORT})
            await self.store.insert_message(session_id, report)
        except Exception as e:
            logger.error(f"Failed to save debug report for session {session_id}: {e}")
            failure = e
        finally:
            self.requests.release(scope)

        if failure is not None:
            message = str(failure) or "Failed to send message."

            def rollback(state: ChatState) -> ChatState:
                changes: dict = {"sessions": patch.revert(state.sessions)}
                if state.current_session_id == session_id:
                    changes["error"] = message
                return state.model_copy(update=changes)

            self._set_state(rollback)
            return

        self._update_sessions(
            lambda sessions: sort_sessions(
                set_message_content(sessions, session_id, placeholder.id, DEBUG_REPORT)
            )
        )

    def stop(self) -> None:
        """Cancel the selected session's generation; other sessions keep streaming."""
        session_id = self._state.current_session_id
        if session_id is not None and self.requests.cancel(session_id):
            self._notify()

    # ── Session management ──────────────────────────────────────────────────────

    async def delete_session(self, session_id: str) -> None:
        self.requests.cancel(session_id, discard=True)
        try:
            await self.store.delete_session(session_id)
        except Exception as e:
            logger.error(f"Failed to delete session {session_id}: {e}")
            self._set_error("Failed to delete the session.")
            return

        def transition(state: ChatState) -> ChatState:
            remaining = [s for s in state.sessions if s.id != session_id]
            current = state.current_session_id
            if current == session_id:
                current = remaining[0].id if remaining else None
            return state.model_copy(update={"sessions": remaining, "current_session_id": current})

        self._set_state(transition)
        logger.info(f"Deleted session {session_id}")

    async def rename_session(self, session_id: str, title: str) -> None:
        cleaned = title.strip()
        if not cleaned:
            return
        cleaned = cleaned[:MAX_TITLE_LENGTH]
        try:
            await self.store.rename_session(session_id, cleaned)
        except Exception as e:
            logger.error(f"Failed to rename session {session_id}: {e}")
            self._set_error("Failed to rename the session.")
            return
        self._update_sessions(lambda sessions: update_session(sessions, session_id, title=cleaned))

    async def apply_override(
        self, main_prompt_content: str, knowledge_items: Iterable[KnowledgeItem]
    ) -> str:
        """
        Attach a prompt override to the selected session and return its id.

        A session that exists only as a selected id is created with the
        override. Store failures propagate to the caller.
        """
        if self.user_id is None:
            raise RuntimeError("No authenticated user")

        override = PromptOverride(
            main_prompt_content=main_prompt_content,
            knowledge_base=list(knowledge_items),
        )
        session_id = self._state.current_session_id
        existing = find_session(self._state.sessions, session_id)

        if existing is None:
            session_id = session_id or new_id()
            await self.store.create_session(session_id, OVERRIDE_SESSION_TITLE, override)
            now = utcnow()
            created = Session(
                id=session_id,
                user_id=self.user_id,
                title=OVERRIDE_SESSION_TITLE,
                created_at=now,
                updated_at=now,
                override=override,
            )
            self._set_state(
                lambda s: s.model_copy(
                    update={"sessions": [created, *s.sessions], "current_session_id": session_id}
                )
            )
        else:
            await self.store.update_override(session_id, override)
            self._update_sessions(
                lambda sessions: update_session(sessions, session_id, override=override)
            )

        logger.info(f"Applied prompt override to session {session_id}")
        return session_id
