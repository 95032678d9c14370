"""Closed result type for streamed provider output.

A provider stream yields zero or more :class:`TextDelta` items followed by
exactly one terminal item, either :class:`StreamEnd` or
:class:`StreamFailure`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(slots=True, frozen=True)
class TextDelta:
    """Incremental text to append to the in-progress response."""

    text: str


@dataclass(slots=True, frozen=True)
class StreamEnd:
    """Normal end of stream."""


@dataclass(slots=True, frozen=True)
class StreamFailure:
    """The stream terminated with an error.

    Attributes:
        reason: Raw failure description from the provider.
        error: Original exception, when one was raised.
    """

    reason: str
    error: BaseException | None = None


StreamItem = Union[TextDelta, StreamEnd, StreamFailure]

__all__ = ["StreamEnd", "StreamFailure", "StreamItem", "TextDelta"]
