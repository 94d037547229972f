import asyncio
from dataclasses import dataclass, field

from loguru import logger

from chatdeck.client.state import new_id


@dataclass
class RequestScope:
    """One in-flight generation: the task producing it and where its text lands."""

    session_id: str
    message_id: str
    request_id: str = field(default_factory=new_id)
    task: asyncio.Task | None = None
    streaming: bool = False
    # Set when the owner no longer wants the partial reply kept (session deleted).
    discard: bool = False

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()


class RequestRegistry:
    """
    Active generations keyed by session id, at most one per session.

    open() cancels and replaces whatever the session had; release() only
    removes the scope it is given, so a superseded request finishing late can
    never unregister its replacement.
    """

    def __init__(self):
        self._scopes: dict[str, RequestScope] = {}

    def __len__(self) -> int:
        return len(self._scopes)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._scopes

    def get(self, session_id: str | None) -> RequestScope | None:
        if session_id is None:
            return None
        return self._scopes.get(session_id)

    def is_active(self, session_id: str | None) -> bool:
        return self.get(session_id) is not None

    def open(self, session_id: str, message_id: str) -> RequestScope:
        self.cancel(session_id)
        scope = RequestScope(session_id=session_id, message_id=message_id)
        self._scopes[session_id] = scope
        return scope

    def cancel(self, session_id: str, discard: bool = False) -> bool:
        scope = self._scopes.pop(session_id, None)
        if scope is None:
            return False
        scope.discard = discard
        scope.cancel()
        logger.debug("Cancelled request {} for session {}", scope.request_id, session_id)
        return True

    def cancel_all(self) -> None:
        for session_id in list(self._scopes):
            self.cancel(session_id, discard=True)

    def release(self, scope: RequestScope) -> None:
        if self._scopes.get(scope.session_id) is scope:
            del self._scopes[scope.session_id]
