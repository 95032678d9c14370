"""Chat engine facade.

The engine owns the message store, session store, composer and the turn and
regeneration controllers, and exposes the operations a front-end needs.
Front-ends observe state through :meth:`ChatEngine.subscribe` instead of
reading the stores directly.
"""

from __future__ import annotations

import logging
from typing import Callable

from ..ai.client import ProviderAdapter
from ..ai.models import BotModel
from ..chat.attachments import FileAttachment, is_image_request
from ..chat.message_model import ImageData, Message, Session
from ..chat.message_store import MessageStore
from ..services.settings import Settings
from .composer import Composer
from .events import Event, EventBus
from .regeneration import RegenerationController
from .session_store import SessionRepository, SessionStore
from .turn_controller import TurnConfig, TurnController
from .turn_models import TurnState

LOGGER = logging.getLogger(__name__)

SUGGESTIONS: tuple[str, ...] = (
    "Write a Python script to parse JSON",
    "Explain Quantum Computing like I'm 5",
    "Summarize the main themes of 1984",
    "Plan a 3-day trip to Tokyo",
)


class ChatEngine:
    """Single entry point for conversation state and turn dispatch."""

    def __init__(
        self,
        settings: Settings,
        adapter: ProviderAdapter,
        *,
        repository: SessionRepository | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._adapter = adapter
        self._bus = event_bus or EventBus()
        self.messages = MessageStore(self._bus)
        self.sessions = SessionStore(
            self.messages,
            self._bus,
            repository,
            persist_debounce_seconds=settings.persist_debounce_seconds,
        )
        self.composer = Composer(self._bus)
        self.turns = TurnController(
            self.messages,
            self.sessions,
            adapter,
            self._bus,
            self.composer,
            self._turn_config,
        )
        self.regeneration = RegenerationController(self.messages, self.turns, self.composer)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model

    @property
    def active_session_id(self) -> str:
        return self.sessions.active_session_id

    @property
    def is_busy(self) -> bool:
        return self.turns.is_busy()

    def history(self) -> list[Message]:
        return self.messages.snapshot()

    def subscribe(self, event_type: type[Event], handler: Callable[[Event], None]) -> None:
        self._bus.subscribe(event_type, handler)

    def unsubscribe(self, event_type: type[Event], handler: Callable[[Event], None]) -> None:
        self._bus.unsubscribe(event_type, handler)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def load(self) -> str:
        """Load persisted sessions; returns the active session id."""
        return self.sessions.load()

    def create_session(self) -> str:
        self.composer.clear()
        return self.sessions.create_session()

    def switch_to(self, session_id: str) -> bool:
        return self.sessions.switch_to(session_id)

    def remove(self, session_id: str) -> bool:
        return self.sessions.remove(session_id)

    def rename(self, session_id: str, title: str) -> bool:
        return self.sessions.rename(session_id, title)

    def list_sessions(self) -> list[Session]:
        return self.sessions.list_sessions()

    def clear_messages(self) -> bool:
        """Empty the active session's log; rejected while a turn is in flight."""
        if self.turns.is_busy():
            LOGGER.debug("ChatEngine.clear_messages: turn in flight; ignoring")
            return False
        self.messages.clear()
        return True

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send(self) -> TurnState | None:
        """Send whatever is currently staged in the composer."""
        composer = self.composer
        return await self.turns.send_turn(composer.text, composer.image, composer.file)

    async def send_turn(
        self,
        raw_text: str,
        attached_image: ImageData | None = None,
        attached_file: FileAttachment | None = None,
    ) -> TurnState | None:
        return await self.turns.send_turn(raw_text, attached_image, attached_file)

    async def generate_image(self, prompt: str) -> TurnState | None:
        return await self.turns.generate_image(prompt)

    async def regenerate(self) -> TurnState | None:
        return await self.regeneration.regenerate()

    def edit_message(self, index: int) -> str | None:
        return self.regeneration.edit_message(index)

    def cancel(self, session_id: str | None = None) -> bool:
        return self.turns.cancel(session_id)

    async def use_suggestion(self, label: str) -> TurnState | None:
        """Dispatch a starter prompt; image requests are only staged for review."""
        if is_image_request(label):
            self.composer.set_text(label)
            return None
        return await self.turns.send_turn(label)

    def set_model(self, model: str | BotModel) -> bool:
        parsed = BotModel.parse(model)
        if parsed is None:
            LOGGER.debug("ChatEngine.set_model: unknown model %r", model)
            return False
        self._settings.model = parsed.value
        return True

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        self.sessions.flush()
        close = getattr(self._adapter, "aclose", None)
        if close is None:
            return
        try:
            await close()
        except Exception as exc:  # pragma: no cover - network teardown
            LOGGER.debug("ChatEngine.aclose: adapter shutdown failed: %s", exc)

    def _turn_config(self) -> TurnConfig:
        settings = self._settings
        return TurnConfig(
            model=settings.model,
            system_instruction=settings.system_instruction,
            thinking_enabled=settings.thinking_enabled,
            thinking_budget=settings.thinking_budget,
        )


__all__ = ["ChatEngine", "SUGGESTIONS"]
