"""Supported model identifiers and per-model generation options."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class BotModel(str, Enum):
    """Closed set of chat models the client can talk to."""

    FLASH = "gemini-2.5-flash"
    PRO = "gemini-2.5-pro"
    LITE = "gemini-2.5-flash-lite"

    @property
    def label(self) -> str:
        return _LABELS[self][0]

    @property
    def description(self) -> str:
        return _LABELS[self][1]

    @classmethod
    def parse(cls, value: "str | BotModel | None") -> "BotModel | None":
        """Resolve a model id or short alias (``flash``, ``pro``, ``lite``)."""

        if isinstance(value, BotModel):
            return value
        normalized = (value or "").strip().lower()
        if not normalized:
            return None
        for model in cls:
            if normalized in (model.value, model.name.lower()):
                return model
        return None


_LABELS: dict[BotModel, tuple[str, str]] = {
    BotModel.FLASH: ("Gemini 2.5 Flash", "Fast & Versatile"),
    BotModel.PRO: ("Gemini 2.5 Pro", "Complex Reasoning"),
    BotModel.LITE: ("Gemini 2.5 Flash Lite", "Speed Optimized"),
}

DEFAULT_MODEL = BotModel.FLASH

# Models that accept a thinking budget. The provider rejects the option for
# every other model, so the toggle alone must never attach it.
THINKING_MODELS: frozenset[BotModel] = frozenset({BotModel.FLASH, BotModel.PRO})


def supports_thinking_budget(model: "str | BotModel") -> bool:
    resolved = BotModel.parse(model)
    return resolved is not None and resolved in THINKING_MODELS


@dataclass(slots=True, frozen=True)
class GenerationOptions:
    """Model-specific options sent alongside a streamed turn."""

    thinking_budget: int | None = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.thinking_budget is not None:
            payload["thinking_budget"] = self.thinking_budget
        return payload


def build_generation_options(
    model: "str | BotModel",
    *,
    thinking_enabled: bool,
    thinking_budget: int,
) -> GenerationOptions:
    """Return the options for ``model``, omitting unsupported ones entirely."""

    if thinking_enabled and supports_thinking_budget(model):
        return GenerationOptions(thinking_budget=max(0, int(thinking_budget)))
    return GenerationOptions()


__all__ = [
    "BotModel",
    "DEFAULT_MODEL",
    "GenerationOptions",
    "THINKING_MODELS",
    "build_generation_options",
    "supports_thinking_budget",
]
