"""Regenerate the last reply or rewind the log to edit an earlier prompt."""

from __future__ import annotations

import logging

from ..chat.attachments import is_image_request, strip_image_prefix
from ..chat.message_model import MessageRole
from ..chat.message_store import MessageStore
from .composer import Composer
from .turn_controller import TurnController
from .turn_models import TurnState

LOGGER = logging.getLogger(__name__)


class RegenerationController:
    """Re-derives turn inputs from history and hands them to the turn controller."""

    def __init__(
        self,
        message_store: MessageStore,
        turns: TurnController,
        composer: Composer,
    ) -> None:
        self._messages = message_store
        self._turns = turns
        self._composer = composer

    def can_regenerate(self) -> bool:
        if self._turns.is_busy() or len(self._messages) < 2:
            return False
        return self._messages[-1].role is MessageRole.MODEL and self._messages[-2].role is MessageRole.USER

    async def regenerate(self) -> TurnState | None:
        """Replace the trailing model reply with a fresh one.

        The log must end in a model message preceded by a user message and no
        turn may be in flight; otherwise nothing changes and ``None`` is
        returned.
        """
        if not self.can_regenerate():
            LOGGER.debug("RegenerationController.regenerate: nothing to regenerate")
            return None

        self._messages.truncate_from(len(self._messages) - 1)
        prompt = self._messages[-1]
        if is_image_request(prompt.text):
            LOGGER.debug("RegenerationController.regenerate: re-running image request %s", prompt.id)
            return await self._turns.run_image_turn(strip_image_prefix(prompt.text))

        history = self._messages.snapshot()[:-1]
        LOGGER.debug(
            "RegenerationController.regenerate: re-sending %s with %d prior message(s)",
            prompt.id,
            len(history),
        )
        return await self._turns.run_chat_turn(history, prompt.text, prompt.image)

    def edit_message(self, index: int) -> str | None:
        """Stage the user message at ``index`` for editing and drop it and its successors.

        Returns:
            The staged prompt text, or ``None`` if ``index`` does not address a
            user message or a turn is in flight.
        """
        if self._turns.is_busy():
            LOGGER.debug("RegenerationController.edit_message: turn in flight")
            return None
        if not 0 <= index < len(self._messages):
            LOGGER.debug("RegenerationController.edit_message: index %d out of range", index)
            return None
        message = self._messages[index]
        if message.role is not MessageRole.USER:
            return None

        staged = strip_image_prefix(message.text)
        self._composer.stage(staged, message.image)
        self._messages.truncate_from(index)
        return staged


__all__ = ["RegenerationController"]
