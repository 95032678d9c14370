"""Turn controller: drives one request/response turn against the provider.

Each session allows a single in-flight turn. A turn appends a streaming
placeholder model message, folds provider deltas into it, and finally
marks it completed, failed, or canceled. Placeholder updates are addressed
by the turn's originating session id, so switching sessions mid-stream keeps
writing into the session that started the turn.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Sequence

from ..ai.client import ProviderAdapter
from ..ai.models import BotModel, build_generation_options
from ..ai.stream import StreamEnd, StreamFailure, TextDelta
from ..chat.attachments import FileAttachment, compose_user_text, image_request_text
from ..chat.message_model import ImageData, Message, MessageRole
from ..chat.message_store import MessageStore
from ..utils.logging import bind_session, unbind_session
from .composer import Composer
from .errors import classify_provider_error
from .events import (
    EventBus,
    TurnCanceled,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
    TurnStreamChunk,
)
from .session_store import SessionStore
from .turn_models import TurnKind, TurnState, TurnStatus

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TurnConfig:
    """Per-turn request configuration, read when a turn is dispatched."""

    model: BotModel | str
    system_instruction: str
    thinking_enabled: bool = False
    thinking_budget: int = 1024


class TurnController:
    """Orchestrates chat and image-generation turns.

    Events Emitted:
        - TurnStarted: once the placeholder is appended and the call is made
        - TurnStreamChunk: for each non-empty delta
        - TurnCompleted / TurnFailed / TurnCanceled: on termination
    """

    def __init__(
        self,
        message_store: MessageStore,
        session_store: SessionStore,
        adapter: ProviderAdapter,
        event_bus: EventBus,
        composer: Composer,
        config_provider: Callable[[], TurnConfig],
    ) -> None:
        self._messages = message_store
        self._sessions = session_store
        self._adapter = adapter
        self._bus = event_bus
        self._composer = composer
        self._get_config = config_provider
        self._turns: dict[str, TurnState] = {}
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._log_tokens: dict[str, contextvars.Token[str]] = {}

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def is_busy(self, session_id: str | None = None) -> bool:
        """Return ``True`` while ``session_id`` (default: active) has a turn in flight."""
        key = session_id or self._sessions.active_session_id
        turn = self._turns.get(key)
        return turn is not None and turn.in_flight

    def current_turn(self, session_id: str | None = None) -> TurnState | None:
        return self._turns.get(session_id or self._sessions.active_session_id)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def send_turn(
        self,
        raw_text: str,
        attached_image: ImageData | None = None,
        attached_file: FileAttachment | None = None,
    ) -> TurnState | None:
        """Send a user turn and stream the model's reply into the log.

        Returns:
            The finished :class:`TurnState`, or ``None`` if the send was
            rejected (empty input or a turn already in flight).
        """
        session_id = self._sessions.active_session_id
        if not raw_text.strip() and attached_image is None and attached_file is None:
            LOGGER.debug("TurnController.send_turn: empty input; ignoring")
            return None
        if self.is_busy(session_id):
            LOGGER.debug("TurnController.send_turn: turn already in flight for %s", session_id)
            return None

        composed = compose_user_text(raw_text, attached_file)
        history = self._messages.snapshot()
        self._messages.append(
            Message(
                role=MessageRole.USER,
                text=composed.full,
                display_text=composed.display_override,
                image=attached_image,
            )
        )
        self._composer.clear()
        return await self.run_chat_turn(history, composed.full, attached_image)

    async def generate_image(self, prompt: str) -> TurnState | None:
        """Record an image request and fill the placeholder with the generated image."""
        session_id = self._sessions.active_session_id
        cleaned = prompt.strip()
        if not cleaned:
            LOGGER.debug("TurnController.generate_image: empty prompt; ignoring")
            return None
        if self.is_busy(session_id):
            LOGGER.debug("TurnController.generate_image: turn already in flight for %s", session_id)
            return None

        self._messages.append(Message(role=MessageRole.USER, text=image_request_text(cleaned)))
        self._composer.clear()
        return await self.run_image_turn(cleaned)

    def cancel(self, session_id: str | None = None) -> bool:
        """Cancel the in-flight turn of ``session_id`` (default: active).

        The task running the turn receives ``CancelledError``; the placeholder
        keeps the partial text and stops streaming.
        """
        key = session_id or self._sessions.active_session_id
        task = self._tasks.get(key)
        if not self.is_busy(key) or task is None or task.done():
            return False
        LOGGER.debug("TurnController.cancel: canceling turn in %s", key)
        task.cancel()
        return True

    # ------------------------------------------------------------------
    # Turn pipelines (shared with regeneration)
    # ------------------------------------------------------------------

    async def run_chat_turn(
        self,
        history: Sequence[Message],
        text: str,
        image: ImageData | None,
    ) -> TurnState:
        """Append a placeholder and stream the reply to ``text`` into it."""
        turn = self._begin(TurnKind.CHAT)
        accumulated = ""
        failure: BaseException | str | None = None
        stream: AsyncIterator[Any] | None = None
        try:
            config = self._get_config()
            options = build_generation_options(
                config.model,
                thinking_enabled=config.thinking_enabled,
                thinking_budget=config.thinking_budget,
            )
            LOGGER.debug(
                "TurnController: dispatching %s (model=%s, history=%d, thinking=%s)",
                turn.turn_id,
                config.model,
                len(history),
                options.thinking_budget,
            )
            stream = self._adapter.stream_turn(
                list(history),
                text,
                image,
                config.model,
                config.system_instruction,
                options,
            )
            async for item in stream:
                if isinstance(item, TextDelta):
                    if not item.text:
                        continue
                    if turn.status is not TurnStatus.STREAMING:
                        turn.mark_streaming()
                    accumulated += item.text
                    turn.response_text = accumulated
                    self._patch(turn, text=accumulated)
                    self._bus.publish(
                        TurnStreamChunk(
                            turn_id=turn.turn_id,
                            session_id=turn.session_id,
                            message_id=turn.message_id or "",
                            content=item.text,
                        )
                    )
                elif isinstance(item, StreamEnd):
                    break
                elif isinstance(item, StreamFailure):
                    failure = item.error if item.error is not None else item.reason
                    break
                else:
                    failure = TypeError(f"Unexpected stream item: {item!r}")
                    break
        except asyncio.CancelledError:
            self._finish_canceled(turn, accumulated)
            raise
        except Exception as exc:
            failure = exc
        finally:
            await _close_stream(stream)

        if failure is not None:
            turn.response_text = accumulated
            self._finish_failed(turn, failure)
        else:
            self._finish_completed(turn, accumulated)
        return turn

    async def run_image_turn(self, prompt: str) -> TurnState:
        """Append a placeholder and fill it with a generated image for ``prompt``."""
        turn = self._begin(TurnKind.IMAGE)
        try:
            image = await self._adapter.generate_image(prompt)
        except asyncio.CancelledError:
            self._finish_canceled(turn, "")
            raise
        except Exception as exc:
            self._finish_failed(turn, exc)
            return turn

        caption = f'Here is the image I generated for "{prompt}".'
        self._finish_completed(turn, caption, image=image)
        return turn

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _begin(self, kind: TurnKind) -> TurnState:
        session_id = self._sessions.active_session_id
        turn = TurnState(session_id=session_id, kind=kind)
        self._log_tokens[turn.turn_id] = bind_session(session_id)
        placeholder = self._messages.append(Message(role=MessageRole.MODEL, is_streaming=True))
        turn.mark_dispatched(placeholder.id)
        self._turns[session_id] = turn
        task = _current_task()
        if task is not None:
            self._tasks[session_id] = task
        self._bus.publish(
            TurnStarted(
                turn_id=turn.turn_id,
                session_id=session_id,
                message_id=placeholder.id,
                kind=kind.value,
            )
        )
        return turn

    def _release(self, turn: TurnState) -> None:
        if self._turns.get(turn.session_id) is turn:
            self._tasks.pop(turn.session_id, None)

    def _unbind(self, turn: TurnState) -> None:
        token = self._log_tokens.pop(turn.turn_id, None)
        if token is not None:
            unbind_session(token)

    def _patch(self, turn: TurnState, **changes: Any) -> None:
        if turn.message_id is None:
            return
        self._sessions.patch_stored_message(turn.session_id, turn.message_id, **changes)

    def _finish_completed(self, turn: TurnState, text: str, *, image: ImageData | None = None) -> None:
        changes: dict[str, Any] = {"text": text, "is_streaming": False}
        if image is not None:
            changes["image"] = image
        self._patch(turn, **changes)
        turn.mark_completed(text)
        self._release(turn)
        LOGGER.debug("TurnController: %s completed (%d chars)", turn.turn_id, len(text))
        self._bus.publish(
            TurnCompleted(
                turn_id=turn.turn_id,
                session_id=turn.session_id,
                message_id=turn.message_id or "",
                response_text=text,
            )
        )
        self._unbind(turn)

    def _finish_failed(self, turn: TurnState, failure: BaseException | str) -> None:
        info = classify_provider_error(failure)
        self._patch(turn, text=info.message, is_error=True, is_streaming=False)
        turn.mark_failed(info.message)
        self._release(turn)
        LOGGER.warning(
            "TurnController: %s failed (%s): %s",
            turn.turn_id,
            info.kind.value,
            info.detail,
        )
        self._bus.publish(
            TurnFailed(
                turn_id=turn.turn_id,
                session_id=turn.session_id,
                message_id=turn.message_id or "",
                error=info.message,
                kind=info.kind.value,
            )
        )
        self._unbind(turn)

    def _finish_canceled(self, turn: TurnState, partial_text: str) -> None:
        self._patch(turn, text=partial_text, is_streaming=False)
        turn.response_text = partial_text
        turn.mark_canceled()
        self._release(turn)
        LOGGER.debug("TurnController: %s canceled", turn.turn_id)
        self._bus.publish(
            TurnCanceled(
                turn_id=turn.turn_id,
                session_id=turn.session_id,
                message_id=turn.message_id or "",
            )
        )
        self._unbind(turn)


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


async def _close_stream(stream: AsyncIterator[Any] | None) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:  # pragma: no cover - adapter cleanup errors are not turn failures
        LOGGER.debug("Error closing provider stream", exc_info=True)


__all__ = ["TurnConfig", "TurnController"]
