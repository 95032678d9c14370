"""Turn lifecycle state.

A turn moves ``COMPOSING -> DISPATCHED -> STREAMING`` and ends in one of
``COMPLETED``, ``FAILED`` or ``CANCELED``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TurnKind(str, Enum):
    CHAT = "chat"
    IMAGE = "image"


class TurnStatus(Enum):
    """Status of a turn in its lifecycle."""

    COMPOSING = "composing"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


_TERMINAL = frozenset({TurnStatus.COMPLETED, TurnStatus.FAILED, TurnStatus.CANCELED})


@dataclass(slots=True)
class TurnState:
    """State of one request/response turn.

    Attributes:
        session_id: Session whose log the turn writes into.
        message_id: Id of the placeholder model message, once appended.
        response_text: Text accumulated so far.
        error: User-facing error message if the turn failed.
    """

    session_id: str
    kind: TurnKind = TurnKind.CHAT
    turn_id: str = field(default_factory=lambda: f"turn-{uuid.uuid4().hex[:8]}")
    status: TurnStatus = TurnStatus.COMPOSING
    message_id: str | None = None
    response_text: str = ""
    error: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def in_flight(self) -> bool:
        return self.status in (TurnStatus.DISPATCHED, TurnStatus.STREAMING)

    @property
    def is_finished(self) -> bool:
        return self.status in _TERMINAL

    def mark_dispatched(self, message_id: str) -> None:
        self.message_id = message_id
        self.status = TurnStatus.DISPATCHED

    def mark_streaming(self) -> None:
        self.status = TurnStatus.STREAMING

    def mark_completed(self, response_text: str) -> None:
        self.response_text = response_text
        self._finish(TurnStatus.COMPLETED)

    def mark_failed(self, error: str) -> None:
        self.error = error
        self._finish(TurnStatus.FAILED)

    def mark_canceled(self) -> None:
        self._finish(TurnStatus.CANCELED)

    def _finish(self, status: TurnStatus) -> None:
        self.status = status
        self.completed_at = _utcnow()


__all__ = ["TurnKind", "TurnState", "TurnStatus"]
