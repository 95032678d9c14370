"""Transient input state: draft text and staged attachments."""

from __future__ import annotations

import logging
from pathlib import Path

from ..chat.attachments import (
    AttachmentError,
    FileAttachment,
    encode_file_as_inline_data,
    load_text_attachment,
)
from ..chat.message_model import ImageData
from .events import ComposerChanged, EventBus

LOGGER = logging.getLogger(__name__)


class Composer:
    """Draft input owned by the engine.

    A successful send clears it; editing a prior turn stages that turn's
    prompt back into it.
    """

    def __init__(self, event_bus: EventBus) -> None:
        self._bus = event_bus
        self._text = ""
        self._image: ImageData | None = None
        self._file: FileAttachment | None = None

    @property
    def text(self) -> str:
        return self._text

    @property
    def image(self) -> ImageData | None:
        return self._image

    @property
    def file(self) -> FileAttachment | None:
        return self._file

    @property
    def is_empty(self) -> bool:
        return not self._text.strip() and self._image is None and self._file is None

    def set_text(self, text: str) -> None:
        self._text = text
        self._notify()

    def append_text(self, fragment: str) -> None:
        """Append dictated or pasted text, inserting a space when needed."""
        spacer = " " if self._text and not self._text.endswith(" ") else ""
        self.set_text(f"{self._text}{spacer}{fragment}")

    def attach_image(self, path: Path | str) -> bool:
        """Stage an image file; on failure the image is left unset."""
        try:
            self._image = encode_file_as_inline_data(path)
        except AttachmentError as exc:
            LOGGER.warning("Composer.attach_image: %s", exc)
            self._image = None
            self._notify()
            return False
        LOGGER.debug("Composer.attach_image: %s (%s)", path, self._image.mime_type)
        self._notify()
        return True

    def attach_file(self, path: Path | str) -> bool:
        """Stage a text file; on failure the file is left unset."""
        try:
            self._file = load_text_attachment(path)
        except AttachmentError as exc:
            LOGGER.warning("Composer.attach_file: %s", exc)
            self._file = None
            self._notify()
            return False
        LOGGER.debug("Composer.attach_file: %s (%d chars)", self._file.name, len(self._file.content))
        self._notify()
        return True

    def set_image(self, image: ImageData | None) -> None:
        self._image = image
        self._notify()

    def clear_image(self) -> None:
        self.set_image(None)

    def clear_file(self) -> None:
        self._file = None
        self._notify()

    def stage(self, text: str, image: ImageData | None = None) -> None:
        """Replace the draft with ``text`` and ``image``; drops any staged file."""
        self._text = text
        self._image = image
        self._file = None
        self._notify()

    def clear(self) -> None:
        self._text = ""
        self._image = None
        self._file = None
        self._notify()

    def _notify(self) -> None:
        self._bus.publish(
            ComposerChanged(
                text=self._text,
                has_image=self._image is not None,
                file_name=self._file.name if self._file is not None else None,
            )
        )


__all__ = ["Composer"]
