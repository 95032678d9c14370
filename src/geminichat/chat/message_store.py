"""Ordered, mutable message log for the active session."""

from __future__ import annotations

import logging
from dataclasses import fields, replace
from typing import Any, Iterator, Sequence

from ..engine.events import EventBus, MessagesChanged
from .message_model import Message

LOGGER = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = frozenset({"id", "role"})
_PATCHABLE_FIELDS = frozenset(f.name for f in fields(Message)) - _IMMUTABLE_FIELDS


class MessageStore:
    """Working view over exactly one session's message log.

    The store never reorders entries. ``patch`` replaces fields of a message
    while keeping its id and position. Every mutation publishes
    :class:`MessagesChanged` so the session store can mirror the log.
    """

    def __init__(self, event_bus: EventBus, session_id: str = "") -> None:
        self._bus = event_bus
        self._session_id = session_id
        self._messages: list[Message] = []

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    def snapshot(self) -> list[Message]:
        """Return a shallow copy of the log."""
        return list(self._messages)

    def get(self, message_id: str) -> Message | None:
        index = self.index_of(message_id)
        return None if index is None else self._messages[index]

    def index_of(self, message_id: str) -> int | None:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None

    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def streaming_message(self) -> Message | None:
        for message in reversed(self._messages):
            if message.is_streaming:
                return message
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append(self, message: Message) -> Message:
        """Add ``message`` to the end of the log.

        Timestamps are clamped so they never decrease within the log.

        Raises:
            ValueError: If ``message`` is streaming while another message
                already is.
        """
        if message.is_streaming and self.streaming_message() is not None:
            raise ValueError("another message is already streaming")
        last = self.last()
        if last is not None and message.timestamp < last.timestamp:
            message = replace(message, timestamp=last.timestamp)
        self._messages.append(message)
        LOGGER.debug(
            "MessageStore.append: session=%s, role=%s, id=%s",
            self._session_id,
            message.role.value,
            message.id,
        )
        self._notify("append")
        return message

    def patch(self, message_id: str, **changes: Any) -> Message | None:
        """Replace only the given fields of the message with ``message_id``.

        Unknown ids are ignored and return ``None``; a turn may finish after
        its message has already been truncated away.

        Raises:
            ValueError: If ``changes`` names ``id``, ``role`` or an unknown field.
        """
        illegal = set(changes) - _PATCHABLE_FIELDS
        if illegal:
            raise ValueError(f"cannot patch message field(s): {sorted(illegal)}")
        index = self.index_of(message_id)
        if index is None:
            LOGGER.debug("MessageStore.patch: id %s not found; ignoring", message_id)
            return None
        updated = replace(self._messages[index], **changes)
        self._messages[index] = updated
        self._notify("patch")
        return updated

    def truncate_from(self, index: int) -> list[Message]:
        """Drop the entry at ``index`` and everything after it.

        Returns:
            The removed messages, in order.

        Raises:
            IndexError: If ``index`` is outside ``0 <= index < len(self)``.
        """
        if not 0 <= index < len(self._messages):
            raise IndexError(f"truncate index {index} out of range for {len(self._messages)} message(s)")
        removed = self._messages[index:]
        del self._messages[index:]
        LOGGER.debug(
            "MessageStore.truncate_from: session=%s, index=%d, removed=%d",
            self._session_id,
            index,
            len(removed),
        )
        self._notify("truncate")
        return removed

    def clear(self) -> None:
        self._messages.clear()
        self._notify("clear")

    def load(self, session_id: str, messages: Sequence[Message]) -> None:
        """Rebind the store to ``session_id`` with a copy of ``messages``."""
        self._session_id = session_id
        self._messages = list(messages)
        LOGGER.debug(
            "MessageStore.load: session=%s, messages=%d",
            session_id,
            len(self._messages),
        )
        self._notify("load")

    def _notify(self, reason: str) -> None:
        self._bus.publish(
            MessagesChanged(session_id=self._session_id, reason=reason, count=len(self._messages))
        )


__all__ = ["MessageStore"]
