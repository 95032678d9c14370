"""Tests for turn dispatch, streaming, failure and cancellation."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from geminichat.ai.stream import StreamEnd, StreamFailure, TextDelta
from geminichat.chat.attachments import FileAttachment
from geminichat.chat.message_model import ImageData, MessageRole
from geminichat.engine.chat_engine import ChatEngine
from geminichat.engine.errors import CREDENTIALS_MESSAGE, MODEL_UNAVAILABLE_MESSAGE, RATE_LIMITED_MESSAGE
from geminichat.engine.events import (
    MessagesChanged,
    TurnCanceled,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
    TurnStreamChunk,
)
from geminichat.engine.session_store import SessionRepository
from geminichat.engine.turn_models import TurnStatus
from geminichat.services.settings import Settings
from geminichat.utils.logging import SessionContextFilter
from tests.helpers import PAUSE, ScriptedAdapter, text_script


def _engine(adapter: ScriptedAdapter, sessions_path: Path, settings: Settings | None = None) -> ChatEngine:
    engine = ChatEngine(
        settings or Settings(api_key="k", persist_debounce_seconds=0.0),
        adapter,
        repository=SessionRepository(sessions_path),
    )
    engine.load()
    return engine


@pytest.mark.asyncio
async def test_hello_scenario(sessions_path: Path) -> None:
    adapter = ScriptedAdapter(text_script("Hel", "lo", " there"))
    engine = _engine(adapter, sessions_path)

    turn = await engine.send_turn("Hello")

    assert turn is not None and turn.status is TurnStatus.COMPLETED
    log = engine.history()
    assert [(message.role, message.text) for message in log] == [
        (MessageRole.USER, "Hello"),
        (MessageRole.MODEL, "Hello there"),
    ]
    assert log[1].is_streaming is False
    assert log[1].is_error is False
    assert turn.message_id == log[1].id
    call = adapter.calls[0]
    assert call["history"] == []
    assert call["text"] == "Hello"
    assert call["model"] == "gemini-2.5-flash"
    assert call["options"].thinking_budget is None
    assert not engine.is_busy


@pytest.mark.asyncio
async def test_placeholder_grows_monotonically_and_only_one_streams(sessions_path: Path) -> None:
    engine = _engine(ScriptedAdapter(text_script("a", "b", "c")), sessions_path)
    observed: list[str] = []
    streaming_counts: list[int] = []

    def _on_change(event: MessagesChanged) -> None:
        streaming = [message for message in engine.messages if message.is_streaming]
        streaming_counts.append(len(streaming))
        if streaming:
            observed.append(streaming[0].text)

    engine.subscribe(MessagesChanged, _on_change)
    await engine.send_turn("go")

    assert observed == ["", "a", "ab", "abc"]
    assert max(streaming_counts) == 1
    assert streaming_counts[-1] == 0


@pytest.mark.asyncio
async def test_turn_events_are_published_in_order(sessions_path: Path) -> None:
    engine = _engine(ScriptedAdapter(text_script("x", "y")), sessions_path)
    seen: list[str] = []
    engine.subscribe(TurnStarted, lambda event: seen.append("started"))
    engine.subscribe(TurnStreamChunk, lambda event: seen.append(f"chunk:{event.content}"))
    engine.subscribe(TurnCompleted, lambda event: seen.append(f"completed:{event.response_text}"))

    await engine.send_turn("hi")

    assert seen == ["started", "chunk:x", "chunk:y", "completed:xy"]


@pytest.mark.asyncio
async def test_rate_limit_failure_mid_stream(sessions_path: Path) -> None:
    adapter = ScriptedAdapter([TextDelta("partial "), RuntimeError("429 Too Many Requests")])
    engine = _engine(adapter, sessions_path)
    failures: list[TurnFailed] = []
    engine.subscribe(TurnFailed, failures.append)

    turn = await engine.send_turn("Hello")

    final = engine.history()[-1]
    assert final.is_error is True
    assert final.is_streaming is False
    assert RATE_LIMITED_MESSAGE in final.text
    assert turn is not None and turn.status is TurnStatus.FAILED
    assert turn.response_text == "partial "
    assert failures[0].kind == "rate_limited"
    assert not engine.is_busy


@pytest.mark.asyncio
async def test_stream_failure_item_is_classified(sessions_path: Path) -> None:
    adapter = ScriptedAdapter([StreamFailure(reason="API key not valid. Please pass a valid API key.")])
    engine = _engine(adapter, sessions_path)

    await engine.send_turn("Hello")

    assert engine.history()[-1].text == CREDENTIALS_MESSAGE
    assert engine.history()[-1].is_error


@pytest.mark.asyncio
async def test_unexpected_adapter_error_uses_generic_message(sessions_path: Path) -> None:
    engine = _engine(ScriptedAdapter([ValueError("boom")]), sessions_path)

    turn = await engine.send_turn("Hello")

    assert engine.history()[-1].text == "Sorry, I encountered an error processing your request: boom"
    assert turn is not None and turn.error == engine.history()[-1].text


@pytest.mark.asyncio
async def test_bad_turn_config_fails_the_turn_instead_of_raising(sessions_path: Path) -> None:
    adapter = ScriptedAdapter()
    settings = Settings(api_key="k", persist_debounce_seconds=0.0, thinking_enabled=True)
    settings.thinking_budget = "lots"  # type: ignore[assignment]
    engine = _engine(adapter, sessions_path, settings)

    turn = await engine.send_turn("Hello")

    assert turn is not None and turn.status is TurnStatus.FAILED
    placeholder = engine.history()[-1]
    assert placeholder.is_error is True
    assert placeholder.is_streaming is False
    assert adapter.calls == []
    assert not engine.is_busy

    settings.thinking_budget = 512
    retry = await engine.send_turn("Hello again")
    assert retry is not None and retry.status is TurnStatus.COMPLETED


@pytest.mark.asyncio
async def test_stream_exhaustion_without_end_marker_completes(sessions_path: Path) -> None:
    engine = _engine(ScriptedAdapter([TextDelta("done")]), sessions_path)

    turn = await engine.send_turn("Hello")

    assert turn is not None and turn.status is TurnStatus.COMPLETED
    assert engine.history()[-1].text == "done"


@pytest.mark.asyncio
async def test_empty_send_is_a_noop(sessions_path: Path) -> None:
    adapter = ScriptedAdapter()
    engine = _engine(adapter, sessions_path)

    assert await engine.send_turn("   ") is None

    assert len(engine.history()) == 0
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_image_only_send_is_dispatched(sessions_path: Path) -> None:
    adapter = ScriptedAdapter()
    engine = _engine(adapter, sessions_path)
    image = ImageData(data="QQ==", mime_type="image/jpeg")

    await engine.send_turn("", attached_image=image)

    assert engine.history()[0].image == image
    assert adapter.calls[0]["image"] == image


@pytest.mark.asyncio
async def test_second_send_while_in_flight_is_rejected(sessions_path: Path) -> None:
    adapter = ScriptedAdapter([TextDelta("a"), PAUSE, StreamEnd()])
    engine = _engine(adapter, sessions_path)

    task = asyncio.create_task(engine.send_turn("one"))
    await adapter.paused.wait()

    assert engine.is_busy
    assert await engine.send_turn("two") is None
    assert await engine.generate_image("a fox") is None
    assert len(engine.history()) == 2

    adapter.resume()
    turn = await task

    assert turn is not None and turn.status is TurnStatus.COMPLETED
    assert [message.text for message in engine.history()] == ["one", "a"]
    assert len(adapter.calls) == 1


@pytest.mark.asyncio
async def test_session_switch_mid_stream_writes_to_origin_session(sessions_path: Path) -> None:
    adapter = ScriptedAdapter([TextDelta("a"), PAUSE, TextDelta("b"), StreamEnd()])
    engine = _engine(adapter, sessions_path)
    origin = engine.active_session_id
    chunks: list[TurnStreamChunk] = []
    engine.subscribe(TurnStreamChunk, chunks.append)

    task = asyncio.create_task(engine.send_turn("question"))
    await adapter.paused.wait()
    other = engine.create_session()
    assert not engine.is_busy
    adapter.resume()
    await task

    assert engine.active_session_id == other
    assert engine.history() == []
    stored = engine.sessions.get(origin)
    assert stored is not None
    assert [message.text for message in stored.messages] == ["question", "ab"]
    assert stored.messages[-1].is_streaming is False
    assert {chunk.session_id for chunk in chunks} == {origin}

    engine.switch_to(origin)
    assert engine.history()[-1].text == "ab"


@pytest.mark.asyncio
async def test_cancel_keeps_partial_text(sessions_path: Path) -> None:
    adapter = ScriptedAdapter([TextDelta("part"), PAUSE, TextDelta("never"), StreamEnd()])
    engine = _engine(adapter, sessions_path)
    canceled: list[TurnCanceled] = []
    engine.subscribe(TurnCanceled, canceled.append)

    task = asyncio.create_task(engine.send_turn("question"))
    await adapter.paused.wait()
    assert engine.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    final = engine.history()[-1]
    assert final.text == "part"
    assert final.is_streaming is False
    assert final.is_error is False
    turn = engine.turns.current_turn()
    assert turn is not None and turn.status is TurnStatus.CANCELED
    assert len(canceled) == 1
    assert not engine.is_busy
    assert engine.cancel() is False


@pytest.mark.asyncio
async def test_file_attachment_is_sent_in_full_form(sessions_path: Path) -> None:
    adapter = ScriptedAdapter()
    engine = _engine(adapter, sessions_path)
    engine.composer.set_text("Summarize")

    await engine.send_turn("Summarize", attached_file=FileAttachment(name="notes.txt", content="body"))

    user = engine.history()[0]
    assert user.text == "Summarize\n\n--- Attached File: notes.txt ---\nbody"
    assert user.display == "Summarize"
    assert adapter.calls[0]["text"] == user.text
    assert engine.composer.is_empty


@pytest.mark.asyncio
async def test_history_excludes_current_turn(sessions_path: Path) -> None:
    adapter = ScriptedAdapter()
    engine = _engine(adapter, sessions_path)

    await engine.send_turn("first")
    await engine.send_turn("second")

    history = adapter.calls[1]["history"]
    assert [message.text for message in history] == ["first", "Hello there"]
    assert adapter.calls[1]["text"] == "second"


@pytest.mark.asyncio
async def test_thinking_budget_follows_model_family(sessions_path: Path) -> None:
    adapter = ScriptedAdapter()
    settings = Settings(api_key="k", persist_debounce_seconds=0.0, thinking_enabled=True, thinking_budget=256)
    engine = _engine(adapter, sessions_path, settings)

    await engine.send_turn("with thinking")
    assert engine.set_model("lite")
    await engine.send_turn("without thinking")

    assert adapter.calls[0]["options"].thinking_budget == 256
    assert adapter.calls[1]["options"].thinking_budget is None
    assert adapter.calls[1]["model"] == "gemini-2.5-flash-lite"


@pytest.mark.asyncio
async def test_generate_image_success(sessions_path: Path) -> None:
    image = ImageData(data="Zm94", mime_type="image/png")
    adapter = ScriptedAdapter(image=image)
    engine = _engine(adapter, sessions_path)

    turn = await engine.generate_image("  a red fox ")

    user, model = engine.history()
    assert user.text == "Generate image: a red fox"
    assert model.image == image
    assert "a red fox" in model.text
    assert model.is_streaming is False
    assert adapter.image_prompts == ["a red fox"]
    assert turn is not None and turn.status is TurnStatus.COMPLETED


@pytest.mark.asyncio
async def test_generate_image_failure(sessions_path: Path) -> None:
    adapter = ScriptedAdapter(image_error=RuntimeError("404 model not found"))
    engine = _engine(adapter, sessions_path)

    await engine.generate_image("a fox")

    model = engine.history()[-1]
    assert model.text == MODEL_UNAVAILABLE_MESSAGE
    assert model.is_error and not model.is_streaming
    assert model.image is None


@pytest.mark.asyncio
async def test_generate_image_empty_prompt_is_ignored(sessions_path: Path) -> None:
    adapter = ScriptedAdapter()
    engine = _engine(adapter, sessions_path)

    assert await engine.generate_image("   ") is None
    assert engine.history() == []


@pytest.mark.asyncio
async def test_image_generation_blocks_chat(sessions_path: Path) -> None:
    adapter = ScriptedAdapter(pause_image=True)
    engine = _engine(adapter, sessions_path)

    task = asyncio.create_task(engine.generate_image("a fox"))
    await adapter.paused.wait()

    assert await engine.send_turn("hello?") is None
    adapter.resume()
    await task

    assert len(engine.history()) == 2
    assert adapter.calls == []


def _log_session_tag() -> str:
    record = logging.LogRecord("geminichat.test", logging.INFO, __file__, 1, "msg", None, None)
    SessionContextFilter().filter(record)
    return record.session


@pytest.mark.asyncio
async def test_log_session_tag_is_scoped_to_the_turn(sessions_path: Path) -> None:
    engine = _engine(ScriptedAdapter(), sessions_path)
    seen: list[str] = []

    def on_chunk(event: TurnStreamChunk) -> None:
        seen.append(_log_session_tag())

    engine.subscribe(TurnStreamChunk, on_chunk)
    assert _log_session_tag() == "-"

    await engine.send_turn("Hello")

    assert seen and set(seen) == {engine.active_session_id}
    assert _log_session_tag() == "-"
