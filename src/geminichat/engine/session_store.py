"""Session store and its durable repository.

The session store owns the canonical list of sessions. The message store is
a working view over the active session; every change to it is mirrored back
into the stored session and then written to disk.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from ..chat.message_model import Message, Session, derive_title
from ..chat.message_store import MessageStore
from ..utils.file_io import write_text
from .events import ActiveSessionChanged, EventBus, MessagesChanged, SessionsChanged

LOGGER = logging.getLogger(__name__)
_SESSIONS_FILENAME = "sessions.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_sessions_path() -> Path:
    return Path.home() / ".geminichat" / _SESSIONS_FILENAME


class SessionRepository:
    """Reads and writes the session list as a single JSON array."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or default_sessions_path()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[Session]:
        """Return persisted sessions; unreadable data yields an empty list."""

        payload = self._read_payload()
        sessions: list[Session] = []
        seen: set[str] = set()
        for record in payload:
            if not isinstance(record, dict):
                LOGGER.warning("Skipping non-object session record in %s", self._path)
                continue
            try:
                session = Session.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping malformed session record in %s: %s", self._path, exc)
                continue
            if session.id in seen:
                LOGGER.warning("Skipping duplicate session id %s in %s", session.id, self._path)
                continue
            seen.add(session.id)
            sessions.append(_finalize_interrupted(session))
        LOGGER.debug("Loaded %d session(s) from %s", len(sessions), self._path)
        return sessions

    def save(self, sessions: Sequence[Session]) -> Path:
        body = json.dumps([session.to_dict() for session in sessions], ensure_ascii=False, indent=2)
        write_text(self._path, body)
        return self._path

    def _read_payload(self) -> list[Any]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            LOGGER.warning("Session file %s is not valid JSON: %s", self._path, exc)
            return []
        if not isinstance(data, list):
            LOGGER.warning("Session file %s does not contain an array; ignoring it", self._path)
            return []
        return data


def _finalize_interrupted(session: Session) -> Session:
    # Nothing is in flight at startup; a message still marked streaming was
    # cut off when the previous process exited.
    if not any(message.is_streaming for message in session.messages):
        return session
    session.messages = [
        replace(message, is_streaming=False) if message.is_streaming else message
        for message in session.messages
    ]
    return session


class SessionStore:
    """Mapping of session id to session, with exactly one active session.

    Events Emitted:
        - SessionsChanged: after any change to the session list
        - ActiveSessionChanged: after a different session becomes active
    """

    def __init__(
        self,
        message_store: MessageStore,
        event_bus: EventBus,
        repository: SessionRepository | None = None,
        *,
        persist_debounce_seconds: float = 0.0,
    ) -> None:
        self._messages = message_store
        self._bus = event_bus
        self._repository = repository
        self._debounce = max(0.0, float(persist_debounce_seconds))
        self._sessions: list[Session] = []
        self._active_id: str | None = None
        self._pending_flush: asyncio.TimerHandle | None = None
        self._bus.subscribe(MessagesChanged, self._on_messages_changed)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def active_session_id(self) -> str:
        if self._active_id is None:
            raise RuntimeError("SessionStore.load() has not been called")
        return self._active_id

    @property
    def active_session(self) -> Session:
        session = self.get(self.active_session_id)
        assert session is not None
        return session

    @property
    def sessions(self) -> list[Session]:
        """Sessions in storage order (most recently created first)."""
        return list(self._sessions)

    def list_sessions(self) -> list[Session]:
        """Sessions ordered by recency of their last change."""
        return sorted(self._sessions, key=lambda session: session.updated_at, reverse=True)

    def get(self, session_id: str) -> Session | None:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def __contains__(self, session_id: object) -> bool:
        return isinstance(session_id, str) and self.get(session_id) is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self) -> str:
        """Load persisted sessions and activate the most recent one.

        A fresh session is created when nothing was persisted.

        Returns:
            The active session id.
        """
        self._sessions = self._repository.load() if self._repository is not None else []
        if not self._sessions:
            LOGGER.debug("SessionStore.load: no prior sessions")
            return self.create_session()
        most_recent = self.list_sessions()[0]
        self._activate(most_recent)
        self._bus.publish(SessionsChanged(session_count=len(self._sessions)))
        return most_recent.id

    def create_session(self) -> str:
        """Prepend an empty session, make it active, and return its id."""
        session = Session()
        self._sessions.insert(0, session)
        LOGGER.debug("SessionStore.create_session: %s", session.id)
        self._activate(session)
        self._changed()
        return session.id

    def switch_to(self, session_id: str) -> bool:
        """Activate ``session_id``; unknown ids leave all state untouched."""
        session = self.get(session_id)
        if session is None:
            LOGGER.debug("SessionStore.switch_to: unknown session %s", session_id)
            return False
        if session_id == self._active_id:
            return True
        self._activate(session)
        return True

    def remove(self, session_id: str) -> bool:
        """Delete ``session_id``; removing the active session re-selects one."""
        session = self.get(session_id)
        if session is None:
            return False
        self._sessions.remove(session)
        LOGGER.debug("SessionStore.remove: %s (remaining=%d)", session_id, len(self._sessions))
        if session_id == self._active_id:
            if self._sessions:
                self._activate(self.list_sessions()[0])
            else:
                self.create_session()
                return True
        self._changed()
        return True

    def rename(self, session_id: str, title: str) -> bool:
        session = self.get(session_id)
        cleaned = title.strip()
        if session is None or not cleaned:
            return False
        session.title = cleaned
        session.updated_at = _utcnow()
        self._changed()
        return True

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    def sync(self, active_messages: Sequence[Message]) -> None:
        """Mirror the active message log into the active session."""
        session = self.active_session
        session.messages = list(active_messages)
        session.updated_at = _utcnow()
        self._infer_title(session)
        self._changed()

    def patch_stored_message(self, session_id: str, message_id: str, **changes: Any) -> Message | None:
        """Patch a message in ``session_id`` wherever that session currently lives.

        The active session is patched through the message store; any other
        session is patched in place. Unknown sessions or messages are ignored.
        """
        if session_id == self._active_id:
            return self._messages.patch(message_id, **changes)
        session = self.get(session_id)
        if session is None:
            return None
        for index, message in enumerate(session.messages):
            if message.id == message_id:
                updated = replace(message, **changes)
                session.messages = [*session.messages[:index], updated, *session.messages[index + 1:]]
                session.updated_at = _utcnow()
                self._changed()
                return updated
        return None

    def flush(self) -> bool:
        """Write the session list now; returns ``False`` if the write failed."""
        if self._pending_flush is not None:
            self._pending_flush.cancel()
            self._pending_flush = None
        if self._repository is None:
            return True
        try:
            self._repository.save(self._sessions)
        except OSError as exc:
            LOGGER.warning("SessionStore.flush: failed to persist sessions: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _activate(self, session: Session) -> None:
        previous = self._active_id
        self._active_id = session.id
        self._messages.load(session.id, list(session.messages))
        if previous != session.id:
            self._bus.publish(ActiveSessionChanged(session_id=session.id, previous_session_id=previous))

    def _infer_title(self, session: Session) -> None:
        if not session.has_default_title:
            return
        first_user = next((message for message in session.messages if message.is_user), None)
        if first_user is None or not first_user.display.strip():
            return
        session.title = derive_title(first_user.display.strip())
        LOGGER.debug("SessionStore: inferred title %r for %s", session.title, session.id)

    def _on_messages_changed(self, event: MessagesChanged) -> None:
        if event.reason == "load" or event.session_id != self._active_id:
            return
        self.sync(self._messages.snapshot())

    def _changed(self) -> None:
        self._bus.publish(SessionsChanged(session_count=len(self._sessions)))
        self._schedule_persist()

    def _schedule_persist(self) -> None:
        if self._repository is None:
            return
        if self._debounce <= 0:
            self.flush()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if self._pending_flush is None:
            self._pending_flush = loop.call_later(self._debounce, self._flush_pending)

    def _flush_pending(self) -> None:
        self._pending_flush = None
        self.flush()


__all__ = ["SessionRepository", "SessionStore", "default_sessions_path"]
