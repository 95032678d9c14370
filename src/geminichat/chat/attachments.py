"""Attachment ingestion and user-turn text composition."""

from __future__ import annotations

import base64
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path

from ..utils.file_io import read_text
from .message_model import ImageData

LOGGER = logging.getLogger(__name__)

mimetypes.add_type("image/webp", ".webp")

IMAGE_PROMPT_PREFIX = "Generate image: "
ACCEPTED_IMAGE_TYPES: frozenset[str] = frozenset({"image/jpeg", "image/png", "image/webp"})
TEXT_FILE_EXTENSIONS: tuple[str, ...] = (".txt", ".md", ".py", ".js", ".json", ".csv", ".html", ".css")


class AttachmentError(RuntimeError):
    """Raised when an attachment cannot be read or encoded."""


@dataclass(slots=True, frozen=True)
class FileAttachment:
    """A text file whose content is sent along with the prompt."""

    name: str
    content: str


@dataclass(slots=True, frozen=True)
class ComposedText:
    """Two views of one user turn.

    Attributes:
        full: History form sent to the provider and stored in the log.
        display: Compact form shown in the chat bubble.
    """

    full: str
    display: str

    @property
    def display_override(self) -> str | None:
        return None if self.display == self.full else self.display


def load_text_attachment(path: Path | str) -> FileAttachment:
    target = Path(path)
    if target.suffix.lower() not in TEXT_FILE_EXTENSIONS:
        raise AttachmentError(f"Unsupported text file type: {target.name}")
    try:
        content = read_text(target)
    except (OSError, UnicodeDecodeError) as exc:
        raise AttachmentError(f"Unable to read text file {target}: {exc}") from exc
    LOGGER.debug("Loaded text attachment %s (%d chars)", target.name, len(content))
    return FileAttachment(name=target.name, content=content)


def encode_file_as_inline_data(path: Path | str) -> ImageData:
    """Read an image file and return it as a base64 inline payload."""

    target = Path(path)
    mime_type, _ = mimetypes.guess_type(target.name)
    if mime_type not in ACCEPTED_IMAGE_TYPES:
        raise AttachmentError(f"Unsupported image type for {target.name}: {mime_type or 'unknown'}")
    try:
        raw = target.read_bytes()
    except OSError as exc:
        raise AttachmentError(f"Unable to read image {target}: {exc}") from exc
    LOGGER.debug("Encoded image attachment %s (%s, %d bytes)", target.name, mime_type, len(raw))
    return ImageData(data=base64.b64encode(raw).decode("ascii"), mime_type=mime_type)


def format_file_block(attachment: FileAttachment) -> str:
    return f"--- Attached File: {attachment.name} ---\n{attachment.content}"


def compose_user_text(raw_text: str, attachment: FileAttachment | None) -> ComposedText:
    """Build the full and display forms for a user turn."""

    typed = raw_text.strip()
    if attachment is None:
        return ComposedText(full=typed, display=typed)
    block = format_file_block(attachment)
    full = f"{typed}\n\n{block}" if typed else block
    display = typed or f"Sent file: {attachment.name}"
    return ComposedText(full=full, display=display)


def image_request_text(prompt: str) -> str:
    return f"{IMAGE_PROMPT_PREFIX}{prompt}"


def is_image_request(text: str) -> bool:
    return text.startswith(IMAGE_PROMPT_PREFIX)


def strip_image_prefix(text: str) -> str:
    """Return ``text`` without the image-generation prefix, if present."""

    if is_image_request(text):
        return text[len(IMAGE_PROMPT_PREFIX):]
    return text


__all__ = [
    "ACCEPTED_IMAGE_TYPES",
    "AttachmentError",
    "ComposedText",
    "FileAttachment",
    "IMAGE_PROMPT_PREFIX",
    "TEXT_FILE_EXTENSIONS",
    "compose_user_text",
    "encode_file_as_inline_data",
    "format_file_block",
    "image_request_text",
    "is_image_request",
    "load_text_attachment",
    "strip_image_prefix",
]
