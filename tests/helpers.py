"""Shared test helpers and stub classes.

Import from here instead of duplicating provider fakes in individual test
files.
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable

from geminichat.ai.stream import StreamEnd, TextDelta
from geminichat.chat.message_model import ImageData

PAUSE = object()
"""Script marker: the fake stream stops here until :meth:`ScriptedAdapter.resume` is called."""


class ScriptedAdapter:
    """Provider adapter that replays a fixed script of stream items.

    Script entries are stream items (yielded), exceptions (raised), or
    :data:`PAUSE`.

    Example:
        adapter = ScriptedAdapter([TextDelta("Hi"), StreamEnd()])
    """

    def __init__(
        self,
        script: Iterable[Any] | None = None,
        *,
        image: ImageData | None = None,
        image_error: BaseException | None = None,
        pause_image: bool = False,
    ) -> None:
        self.script = list(script) if script is not None else [TextDelta("Hello"), TextDelta(" there"), StreamEnd()]
        self.image = image or ImageData(data="aW1n", mime_type="image/png")
        self.image_error = image_error
        self.pause_image = pause_image
        self.calls: list[dict[str, Any]] = []
        self.image_prompts: list[str] = []
        self.paused = asyncio.Event()
        self._resume = asyncio.Event()
        self.closed = False

    def resume(self) -> None:
        self._resume.set()

    async def stream_turn(self, history, text, image, model, system_instruction, options):
        self.calls.append(
            {
                "history": list(history),
                "text": text,
                "image": image,
                "model": model,
                "system_instruction": system_instruction,
                "options": options,
            }
        )
        for item in self.script:
            if item is PAUSE:
                self.paused.set()
                await self._resume.wait()
                continue
            if isinstance(item, BaseException):
                raise item
            yield item

    async def generate_image(self, prompt: str) -> ImageData:
        self.image_prompts.append(prompt)
        if self.pause_image:
            self.paused.set()
            await self._resume.wait()
        if self.image_error is not None:
            raise self.image_error
        return self.image

    async def aclose(self) -> None:
        self.closed = True


def text_script(*chunks: str) -> list[Any]:
    return [*(TextDelta(chunk) for chunk in chunks), StreamEnd()]
