"""Event bus and engine events.

Front-ends subscribe to these events instead of reading engine state
directly. Every mutation of the active message log, the session list, the
composer, or a turn's lifecycle is announced here.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar
from weakref import WeakMethod

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all engine events."""

    pass


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Message log events
# =============================================================================


@dataclass(slots=True)
class MessagesChanged(Event):
    """Emitted after the active message log changes.

    Attributes:
        session_id: Session the log is bound to.
        reason: One of ``append``, ``patch``, ``truncate``, ``clear`` or
            ``load`` (contents replaced by a session switch).
        count: Number of messages after the change.
    """

    session_id: str
    reason: str
    count: int


_QUIET_EVENT_TYPES.add(MessagesChanged)


# =============================================================================
# Session events
# =============================================================================


@dataclass(slots=True)
class SessionsChanged(Event):
    """Emitted when the session list is created, removed, renamed or synced."""

    session_count: int


_QUIET_EVENT_TYPES.add(SessionsChanged)


@dataclass(slots=True)
class ActiveSessionChanged(Event):
    """Emitted when a different session becomes active."""

    session_id: str
    previous_session_id: str | None = None


# =============================================================================
# Turn events
# =============================================================================


@dataclass(slots=True)
class TurnStarted(Event):
    """Emitted once a turn has been dispatched to the provider.

    Attributes:
        turn_id: Unique identifier of the turn.
        session_id: Session the turn writes into.
        message_id: Id of the placeholder model message.
        kind: ``chat`` or ``image``.
    """

    turn_id: str
    session_id: str
    message_id: str
    kind: str = "chat"


@dataclass(slots=True)
class TurnStreamChunk(Event):
    """Emitted for each non-empty text delta received from the provider."""

    turn_id: str
    session_id: str
    message_id: str
    content: str


_QUIET_EVENT_TYPES.add(TurnStreamChunk)


@dataclass(slots=True)
class TurnCompleted(Event):
    """Emitted when a turn's placeholder has been finalized successfully."""

    turn_id: str
    session_id: str
    message_id: str
    response_text: str


@dataclass(slots=True)
class TurnFailed(Event):
    """Emitted when a turn terminated in failure.

    Attributes:
        error: The user-facing message written into the log.
        kind: The classified failure kind (see ``engine.errors``).
    """

    turn_id: str
    session_id: str
    message_id: str
    error: str
    kind: str


@dataclass(slots=True)
class TurnCanceled(Event):
    """Emitted when an in-flight turn was canceled."""

    turn_id: str
    session_id: str
    message_id: str


# =============================================================================
# Composer events
# =============================================================================


@dataclass(slots=True)
class ComposerChanged(Event):
    """Emitted when the draft text or staged attachments change."""

    text: str
    has_image: bool
    file_name: str | None = None


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus.

    Handlers registered as bound methods are held through ``WeakMethod`` so
    a discarded view does not keep receiving events; plain functions and
    lambdas are held strongly.

    Thread Safety:
        Not thread-safe. All calls happen on the event loop thread.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for events of exactly ``event_type``."""
        handler_ref = _HandlerRef.create(handler)
        self._handlers[event_type].append(handler_ref)
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return

        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Invoke every handler for ``event`` in registration order.

        A handler that raises is logged and does not stop delivery to the
        remaining handlers.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if not handlers:
            return

        if not is_quiet:
            logger.debug(
                "Publishing %s to %d handler(s)",
                event_type.__name__,
                len(handlers),
            )

        dead_indices: list[int] = []

        # Iterate over a copy; handlers may subscribe while being notified.
        for i, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(i)
                continue

            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for i in reversed(dead_indices):
            handlers.pop(i)

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference otherwise."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: Any, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref
        return self._ref()

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        cls_name = type(handler.__self__).__name__
        return f"{cls_name}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "MessagesChanged",
    "SessionsChanged",
    "ActiveSessionChanged",
    "TurnStarted",
    "TurnStreamChunk",
    "TurnCompleted",
    "TurnFailed",
    "TurnCanceled",
    "ComposerChanged",
]
