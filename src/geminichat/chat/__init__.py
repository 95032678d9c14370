"""Chat message models, the message log, and attachment helpers."""

from .message_model import ImageData, Message, MessageRole, Session
from .message_store import MessageStore

__all__ = ["ImageData", "Message", "MessageRole", "MessageStore", "Session"]
