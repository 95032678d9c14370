"""Async provider client for Gemini's OpenAI-compatible endpoint."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Protocol, Sequence

import httpx
from openai import APIError, AsyncOpenAI

from ..chat.message_model import ImageData, Message
from .models import BotModel, GenerationOptions
from .stream import StreamEnd, StreamFailure, StreamItem, TextDelta

LOGGER = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """Raised when the provider returns an unusable response."""


class ProviderAdapter(Protocol):
    """Contract the conversation engine relies on."""

    def stream_turn(
        self,
        history: Sequence[Message],
        text: str,
        image: ImageData | None,
        model: BotModel | str,
        system_instruction: str,
        options: GenerationOptions,
    ) -> AsyncIterator[StreamItem]:
        """Stream the model's reply to ``text`` given the prior ``history``."""
        ...

    async def generate_image(self, prompt: str) -> ImageData:
        """Return a single generated image for ``prompt``."""
        ...


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the provider client."""

    base_url: str
    api_key: str
    image_model: str = "imagen-3.0-generate-002"
    organization: str | None = None
    request_timeout: float | None = 90.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class GeminiClient:
    """Provider adapter issuing one streamed chat completion per turn.

    Failures never escape :meth:`stream_turn`; they are yielded as a
    terminal :class:`StreamFailure`. There is no retry: a failed turn is
    reported to the user as-is.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_turn(
        self,
        history: Sequence[Message],
        text: str,
        image: ImageData | None,
        model: BotModel | str,
        system_instruction: str,
        options: GenerationOptions,
    ) -> AsyncIterator[StreamItem]:
        payload = self._build_chat_payload(
            history=history,
            text=text,
            image=image,
            model=model,
            system_instruction=system_instruction,
            options=options,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        try:
            async with self._client.chat.completions.stream(**payload) as stream:
                async for event in stream:
                    delta = self._extract_delta(event)
                    if delta:
                        yield TextDelta(delta)
        except (APIError, httpx.HTTPError, ProviderError) as exc:
            LOGGER.warning("Streamed chat completion failed: %s", exc)
            yield StreamFailure(reason=str(exc), error=exc)
            return
        yield StreamEnd()

    async def generate_image(self, prompt: str) -> ImageData:
        LOGGER.debug("Generating image via %s", self._settings.image_model)
        response = await self._client.images.generate(
            model=self._settings.image_model,
            prompt=prompt,
            n=1,
            response_format="b64_json",
        )
        data = getattr(response, "data", None) or []
        encoded = getattr(data[0], "b64_json", None) if data else None
        if not encoded:
            raise ProviderError("Image generation returned no image data")
        return ImageData(data=encoded, mime_type="image/png")

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _build_chat_payload(
        self,
        *,
        history: Sequence[Message],
        text: str,
        image: ImageData | None,
        model: BotModel | str,
        system_instruction: str,
        options: GenerationOptions,
    ) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        for message in history:
            if message.is_error or message.is_streaming:
                continue
            if not message.text and message.image is None:
                continue
            messages.append(self._convert_message(message.is_user, message.text, message.image))
        messages.append(self._convert_message(True, text, image))

        model_id = model.value if isinstance(model, BotModel) else str(model)
        payload: Dict[str, Any] = {"model": model_id, "messages": messages}
        if options.thinking_budget is not None:
            payload["extra_body"] = {
                "extra_body": {"google": {"thinking_config": {"thinking_budget": options.thinking_budget}}}
            }
        return payload

    @staticmethod
    def _convert_message(is_user: bool, text: str, image: ImageData | None) -> Dict[str, Any]:
        role = "user" if is_user else "assistant"
        if image is None or not is_user:
            return {"role": role, "content": text}
        parts: List[Dict[str, Any]] = []
        if text:
            parts.append({"type": "text", "text": text})
        parts.append({"type": "image_url", "image_url": {"url": image.as_data_url()}})
        return {"role": role, "content": parts}

    @staticmethod
    def _extract_delta(event: Any) -> str | None:
        if getattr(event, "type", None) != "content.delta":
            return None
        delta = getattr(event, "delta", None)
        return str(delta) if delta else None

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


__all__ = ["ClientSettings", "GeminiClient", "ProviderAdapter", "ProviderError"]
