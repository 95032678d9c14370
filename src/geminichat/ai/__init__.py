"""Provider adapter, model catalog, and stream result types."""

from .models import BotModel, GenerationOptions, build_generation_options, supports_thinking_budget
from .stream import StreamEnd, StreamFailure, StreamItem, TextDelta

__all__ = [
    "BotModel",
    "GenerationOptions",
    "StreamEnd",
    "StreamFailure",
    "StreamItem",
    "TextDelta",
    "build_generation_options",
    "supports_thinking_budget",
]
