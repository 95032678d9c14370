"""Chat message and session data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping

DEFAULT_SESSION_TITLE = "New Chat"
TITLE_MAX_LENGTH = 30
TITLE_ELLIPSIS = "..."


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex}"


def new_session_id() -> str:
    return f"session-{uuid.uuid4().hex}"


class MessageRole(str, Enum):
    """Author of a message."""

    USER = "user"
    MODEL = "model"


@dataclass(slots=True, frozen=True)
class ImageData:
    """Inline image payload (base64 body plus MIME type)."""

    data: str
    mime_type: str = "image/png"

    def as_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    def to_dict(self) -> Dict[str, Any]:
        return {"data": self.data, "mime_type": self.mime_type}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ImageData":
        data = payload.get("data")
        if not isinstance(data, str) or not data:
            raise ValueError("image payload is missing base64 data")
        mime_type = payload.get("mime_type") or "image/png"
        return cls(data=data, mime_type=str(mime_type))


@dataclass(slots=True, frozen=True)
class Message:
    """A single turn's content inside a session log.

    ``text`` is the history-bearing (full) form. ``display_text`` is set only
    when the compact form shown to the user differs from it, e.g. when a file
    attachment block was appended to the typed prompt.
    """

    role: MessageRole
    text: str = ""
    id: str = field(default_factory=new_message_id)
    image: ImageData | None = None
    display_text: str | None = None
    is_streaming: bool = False
    is_error: bool = False
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def display(self) -> str:
        return self.display_text if self.display_text is not None else self.text

    @property
    def is_user(self) -> bool:
        return self.role is MessageRole.USER

    @property
    def is_model(self) -> bool:
        return self.role is MessageRole.MODEL

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for persistence."""

        payload: Dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.image is not None:
            payload["image"] = self.image.to_dict()
        if self.display_text is not None:
            payload["display_text"] = self.display_text
        if self.is_streaming:
            payload["is_streaming"] = True
        if self.is_error:
            payload["is_error"] = True
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Message":
        """Rebuild a message from :meth:`to_dict` output.

        Raises ``ValueError`` (or ``KeyError``/``TypeError``) for malformed
        records so callers can decide whether to skip them.
        """

        role = MessageRole(payload["role"])
        message_id = payload.get("id")
        if not isinstance(message_id, str) or not message_id:
            raise ValueError("message record is missing an id")
        text = payload.get("text", "")
        if not isinstance(text, str):
            raise ValueError("message text must be a string")
        image_payload = payload.get("image")
        image = ImageData.from_dict(image_payload) if isinstance(image_payload, Mapping) else None
        display_text = payload.get("display_text")
        return cls(
            role=role,
            text=text,
            id=message_id,
            image=image,
            display_text=display_text if isinstance(display_text, str) else None,
            is_streaming=bool(payload.get("is_streaming", False)),
            is_error=bool(payload.get("is_error", False)),
            timestamp=_parse_timestamp(payload.get("timestamp")),
        )


@dataclass(slots=True)
class Session:
    """One persisted conversation thread."""

    id: str = field(default_factory=new_session_id)
    title: str = DEFAULT_SESSION_TITLE
    messages: list[Message] = field(default_factory=list)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def has_default_title(self) -> bool:
        return self.title == DEFAULT_SESSION_TITLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Session":
        session_id = payload.get("id")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("session record is missing an id")
        raw_messages = payload.get("messages")
        if not isinstance(raw_messages, list):
            raise ValueError(f"session {session_id} has no message array")
        title = payload.get("title")
        return cls(
            id=session_id,
            title=title if isinstance(title, str) and title else DEFAULT_SESSION_TITLE,
            messages=[Message.from_dict(item) for item in raw_messages],
            updated_at=_parse_timestamp(payload.get("updated_at")),
        )


def derive_title(text: str, *, limit: int = TITLE_MAX_LENGTH) -> str:
    """Return a session title inferred from the first user prompt."""

    if len(text) <= limit:
        return text
    return f"{text[:limit]}{TITLE_ELLIPSIS}"


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # Epoch milliseconds, as written by older clients.
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return _utcnow()


__all__ = [
    "DEFAULT_SESSION_TITLE",
    "ImageData",
    "Message",
    "MessageRole",
    "Session",
    "TITLE_ELLIPSIS",
    "TITLE_MAX_LENGTH",
    "derive_title",
    "new_message_id",
    "new_session_id",
]
