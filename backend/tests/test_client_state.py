from __future__ import annotations

from datetime import timedelta

from chatdeck.client.state import (
    HEADER_TITLE_LENGTH,
    Message,
    OptimisticAppend,
    Session,
    display_title,
    find_session,
    sort_sessions,
    title_from_message,
    utcnow,
)


def _session(session_id: str, messages: list[Message] | None = None, age_minutes: int = 0) -> Session:
    created = utcnow() - timedelta(minutes=age_minutes)
    return Session(
        id=session_id,
        user_id=1,
        title="t",
        messages=messages or [],
        created_at=created,
        updated_at=created,
    )


def test_persisted_title_cuts_at_fifty_without_ellipsis() -> None:
    text = "a" * 80
    assert title_from_message(text) == "a" * 50
    assert title_from_message("short") == "short"


def test_display_title_adds_ellipsis() -> None:
    title = "b" * 45
    assert display_title(title) == "b" * 30 + "..."
    assert display_title(title, HEADER_TITLE_LENGTH) == "b" * 40 + "..."
    assert display_title("b" * 30) == "b" * 30


def test_sort_sessions_by_last_message_then_creation() -> None:
    old_with_recent_message = _session(
        "a",
        [Message.create("user", "hi")],
        age_minutes=120,
    )
    empty_recent = _session("b", age_minutes=10)
    empty_old = _session("c", age_minutes=60)

    ordered = sort_sessions([empty_old, empty_recent, old_with_recent_message])
    assert [s.id for s in ordered] == ["a", "b", "c"]


def test_optimistic_append_creates_session_at_top() -> None:
    user = Message.create("user", "Hello")
    reply = Message.create("assistant", "")
    patch = OptimisticAppend(
        session_id="new",
        user_id=7,
        messages=(user, reply),
        title="Hello",
        rollback_ids=frozenset({reply.id}),
    )

    sessions = patch.apply([_session("other")])
    assert [s.id for s in sessions] == ["new", "other"]
    assert sessions[0].title == "Hello"
    assert [m.id for m in sessions[0].messages] == [user.id, reply.id]


def test_optimistic_append_keeps_title_of_non_empty_session() -> None:
    existing = _session("s", [Message.create("user", "first")])
    patch = OptimisticAppend(
        session_id="s",
        user_id=1,
        messages=(Message.create("user", "second"),),
        title="second",
        rollback_ids=frozenset(),
    )
    updated = find_session(patch.apply([existing]), "s")
    assert updated.title == "t"
    assert len(updated.messages) == 2


def test_revert_removes_only_rollback_ids() -> None:
    user = Message.create("user", "Hello")
    reply = Message.create("assistant", "")
    patch = OptimisticAppend(
        session_id="s",
        user_id=1,
        messages=(user, reply),
        title="Hello",
        rollback_ids=frozenset({reply.id}),
    )
    reverted = patch.revert(patch.apply([_session("s")]))
    assert [m.id for m in find_session(reverted, "s").messages] == [user.id]
