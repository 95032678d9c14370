"""Tests for the session store and its JSON repository."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from geminichat.chat.message_model import DEFAULT_SESSION_TITLE, Message, MessageRole, Session
from geminichat.chat.message_store import MessageStore
from geminichat.engine.events import ActiveSessionChanged, EventBus
from geminichat.engine.session_store import SessionRepository, SessionStore


def _make_store(path: Path, *, debounce: float = 0.0) -> tuple[SessionStore, MessageStore, EventBus]:
    bus: EventBus = EventBus()
    messages = MessageStore(bus)
    store = SessionStore(messages, bus, SessionRepository(path), persist_debounce_seconds=debounce)
    return store, messages, bus


def _user(text: str) -> Message:
    return Message(role=MessageRole.USER, text=text)


def _model(text: str) -> Message:
    return Message(role=MessageRole.MODEL, text=text)


def test_load_creates_session_when_nothing_persisted(sessions_path: Path) -> None:
    store, messages, _ = _make_store(sessions_path)

    active = store.load()

    assert [session.id for session in store.sessions] == [active]
    assert store.active_session.title == DEFAULT_SESSION_TITLE
    assert messages.session_id == active
    assert len(messages) == 0
    assert sessions_path.exists()


@pytest.mark.parametrize("blob", ["{not json", '{"id": "x"}', "42", ""])
def test_corrupt_file_is_treated_as_empty(sessions_path: Path, blob: str, caplog) -> None:
    sessions_path.write_text(blob, encoding="utf-8")
    store, _, _ = _make_store(sessions_path)

    with caplog.at_level("WARNING"):
        store.load()

    assert len(store.sessions) == 1
    assert store.active_session.messages == []


def test_malformed_and_duplicate_records_are_skipped(sessions_path: Path) -> None:
    good = Session(id="s-good", title="Good", messages=[_user("hi")])
    sessions_path.write_text(
        json.dumps(
            [
                good.to_dict(),
                {"id": "s-bad", "title": "Bad", "messages": "oops"},
                "not an object",
                {**good.to_dict(), "title": "Duplicate"},
            ]
        ),
        encoding="utf-8",
    )

    sessions = SessionRepository(sessions_path).load()

    assert [(session.id, session.title) for session in sessions] == [("s-good", "Good")]


def test_round_trip_reproduces_session_list(sessions_path: Path) -> None:
    first = Session(id="s1", title="First", messages=[_user("a"), _model("b")])
    second = Session(id="s2", title="Second", messages=[])
    repository = SessionRepository(sessions_path)

    repository.save([first, second])

    assert repository.load() == [first, second]


def test_interrupted_streaming_messages_are_finalized_on_load(sessions_path: Path) -> None:
    stale = Message(role=MessageRole.MODEL, text="half", is_streaming=True)
    SessionRepository(sessions_path).save([Session(id="s1", messages=[_user("q"), stale])])

    loaded = SessionRepository(sessions_path).load()

    assert loaded[0].messages[1].is_streaming is False
    assert loaded[0].messages[1].text == "half"


def test_load_activates_most_recent_session(sessions_path: Path) -> None:
    older = Session(id="old", messages=[_user("old")])
    newer = Session(id="new", messages=[_user("new")])
    older.updated_at = newer.updated_at.replace(year=newer.updated_at.year - 1)
    SessionRepository(sessions_path).save([older, newer])
    store, messages, _ = _make_store(sessions_path)

    assert store.load() == "new"
    assert [message.text for message in messages] == ["new"]


def test_create_session_prepends_and_activates(sessions_path: Path) -> None:
    store, messages, _ = _make_store(sessions_path)
    first = store.load()
    messages.append(_user("hello"))

    second = store.create_session()

    assert [session.id for session in store.sessions] == [second, first]
    assert store.active_session_id == second
    assert len(messages) == 0


def test_message_changes_are_mirrored_and_persisted(sessions_path: Path) -> None:
    store, messages, _ = _make_store(sessions_path)
    active = store.load()

    messages.append(_user("hello"))
    messages.append(_model("hi there"))

    stored = store.get(active)
    assert stored is not None
    assert [message.text for message in stored.messages] == ["hello", "hi there"]
    persisted = json.loads(sessions_path.read_text(encoding="utf-8"))
    assert [message["text"] for message in persisted[0]["messages"]] == ["hello", "hi there"]


def test_title_is_derived_exactly_once(sessions_path: Path) -> None:
    store, messages, _ = _make_store(sessions_path)
    store.load()

    messages.append(_user("Explain quantum computing in simple terms for a five year old"))
    title = store.active_session.title
    messages.append(_model("Sure"))
    messages.append(_user("Now explain relativity"))

    assert title == "Explain quantum computing in s..."
    assert store.active_session.title == title


def test_title_uses_display_form(sessions_path: Path) -> None:
    store, messages, _ = _make_store(sessions_path)
    store.load()

    messages.append(
        Message(
            role=MessageRole.USER,
            text="--- Attached File: notes.txt ---\nbody",
            display_text="Sent file: notes.txt",
        )
    )

    assert store.active_session.title == "Sent file: notes.txt"


def test_switch_to_copies_stored_log(sessions_path: Path) -> None:
    store, messages, bus = _make_store(sessions_path)
    first = store.load()
    messages.append(_user("first session"))
    second = store.create_session()
    changes: list[ActiveSessionChanged] = []
    bus.subscribe(ActiveSessionChanged, changes.append)

    assert store.switch_to(first)
    messages.append(_model("reply"))

    assert [message.text for message in messages] == ["first session", "reply"]
    assert store.get(second).messages == []  # type: ignore[union-attr]
    assert changes == [ActiveSessionChanged(session_id=first, previous_session_id=second)]


def test_switch_to_unknown_id_changes_nothing(sessions_path: Path) -> None:
    store, messages, _ = _make_store(sessions_path)
    active = store.load()
    messages.append(_user("keep"))

    assert store.switch_to("missing") is False
    assert store.active_session_id == active
    assert len(messages) == 1


def test_switching_does_not_bump_recency(sessions_path: Path) -> None:
    store, messages, _ = _make_store(sessions_path)
    first = store.load()
    messages.append(_user("a"))
    stamp = store.get(first).updated_at  # type: ignore[union-attr]
    store.create_session()

    store.switch_to(first)

    assert store.get(first).updated_at == stamp  # type: ignore[union-attr]


def test_remove_active_selects_most_recent_remaining(sessions_path: Path) -> None:
    store, messages, _ = _make_store(sessions_path)
    first = store.load()
    messages.append(_user("older"))
    second = store.create_session()
    messages.append(_user("newer"))
    third = store.create_session()

    assert store.remove(third)

    assert store.active_session_id == second
    assert [message.text for message in messages] == ["newer"]
    assert {session.id for session in store.sessions} == {first, second}


def test_remove_last_session_creates_fresh_one(sessions_path: Path) -> None:
    store, _, _ = _make_store(sessions_path)
    only = store.load()

    assert store.remove(only)

    assert len(store.sessions) == 1
    assert store.active_session_id != only
    assert store.active_session.title == DEFAULT_SESSION_TITLE


def test_remove_unknown_session(sessions_path: Path) -> None:
    store, _, _ = _make_store(sessions_path)
    store.load()

    assert store.remove("missing") is False


def test_rename_sets_explicit_title(sessions_path: Path) -> None:
    store, messages, _ = _make_store(sessions_path)
    active = store.load()

    assert store.rename(active, "  Trip planning ")
    messages.append(_user("Plan a 3-day trip to Tokyo"))

    assert store.active_session.title == "Trip planning"
    assert store.rename(active, "   ") is False
    assert store.rename("missing", "x") is False


def test_patch_stored_message_targets_inactive_session(sessions_path: Path) -> None:
    store, messages, _ = _make_store(sessions_path)
    first = store.load()
    placeholder = messages.append(Message(role=MessageRole.MODEL, is_streaming=True))
    store.create_session()

    updated = store.patch_stored_message(first, placeholder.id, text="late", is_streaming=False)

    assert updated is not None
    assert len(messages) == 0
    assert store.get(first).messages[0].text == "late"  # type: ignore[union-attr]
    assert store.patch_stored_message("missing", placeholder.id, text="x") is None


def test_flush_failure_is_logged(sessions_path: Path, monkeypatch, caplog) -> None:
    store, _, _ = _make_store(sessions_path)
    store.load()

    def _fail(sessions):
        raise OSError("disk full")

    monkeypatch.setattr(store._repository, "save", _fail)
    with caplog.at_level("WARNING"):
        assert store.flush() is False

    assert "disk full" in caplog.text


@pytest.mark.asyncio
async def test_persistence_is_debounced_inside_event_loop(sessions_path: Path) -> None:
    store, messages, _ = _make_store(sessions_path, debounce=0.01)
    store.load()
    before = sessions_path.read_text(encoding="utf-8") if sessions_path.exists() else ""

    messages.append(_user("one"))
    messages.append(_user("two"))
    assert (sessions_path.read_text(encoding="utf-8") if sessions_path.exists() else "") == before

    await asyncio.sleep(0.05)

    persisted = json.loads(sessions_path.read_text(encoding="utf-8"))
    assert [message["text"] for message in persisted[0]["messages"]] == ["one", "two"]
