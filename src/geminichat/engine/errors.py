"""Classification of provider failures into user-facing messages."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from openai import (
    APIStatusError,
    AuthenticationError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
)


class ProviderErrorKind(str, Enum):
    CREDENTIALS = "credentials"
    MODEL_UNAVAILABLE = "model_unavailable"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


CREDENTIALS_MESSAGE = "API key is missing or invalid. Configure your API key before retrying."
MODEL_UNAVAILABLE_MESSAGE = "The selected model is unavailable. Switch to a different model and try again."
RATE_LIMITED_MESSAGE = "Rate limit exceeded. Please wait a moment and retry later."
GENERIC_MESSAGE_PREFIX = "Sorry, I encountered an error processing your request"

_CREDENTIAL_MARKERS = ("api key", "api_key", "401", "403", "unauthenticated", "permission denied")
_NOT_FOUND_MARKERS = ("404", "not found", "not_found", "is not supported")
_RATE_LIMIT_MARKERS = ("429", "rate limit", "quota", "resource_exhausted", "too many requests")


@dataclass(slots=True, frozen=True)
class ProviderErrorInfo:
    kind: ProviderErrorKind
    message: str
    detail: str


def classify_provider_error(error: BaseException | str) -> ProviderErrorInfo:
    """Map a provider failure to a :class:`ProviderErrorInfo`.

    Typed ``openai`` exceptions are checked first; anything else is matched
    against its description.
    """

    detail = str(error) if str(error) else type(error).__name__
    kind = _kind_from_type(error) if isinstance(error, BaseException) else None
    if kind is None:
        kind = _kind_from_text(detail)
    return ProviderErrorInfo(kind=kind, message=_message_for(kind, detail), detail=detail)


def _kind_from_type(error: BaseException) -> ProviderErrorKind | None:
    if isinstance(error, (AuthenticationError, PermissionDeniedError)):
        return ProviderErrorKind.CREDENTIALS
    if isinstance(error, NotFoundError):
        return ProviderErrorKind.MODEL_UNAVAILABLE
    if isinstance(error, RateLimitError):
        return ProviderErrorKind.RATE_LIMITED
    if isinstance(error, APIStatusError):
        status = error.status_code
        if status in (401, 403):
            return ProviderErrorKind.CREDENTIALS
        if status == 404:
            return ProviderErrorKind.MODEL_UNAVAILABLE
        if status == 429:
            return ProviderErrorKind.RATE_LIMITED
    return None


def _kind_from_text(detail: str) -> ProviderErrorKind:
    lowered = detail.lower()
    # Rate limiting first: quota errors often mention the key's project too.
    if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return ProviderErrorKind.RATE_LIMITED
    if any(marker in lowered for marker in _CREDENTIAL_MARKERS):
        return ProviderErrorKind.CREDENTIALS
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return ProviderErrorKind.MODEL_UNAVAILABLE
    return ProviderErrorKind.UNKNOWN


def _message_for(kind: ProviderErrorKind, detail: str) -> str:
    if kind is ProviderErrorKind.CREDENTIALS:
        return CREDENTIALS_MESSAGE
    if kind is ProviderErrorKind.MODEL_UNAVAILABLE:
        return MODEL_UNAVAILABLE_MESSAGE
    if kind is ProviderErrorKind.RATE_LIMITED:
        return RATE_LIMITED_MESSAGE
    return f"{GENERIC_MESSAGE_PREFIX}: {detail}"


__all__ = [
    "CREDENTIALS_MESSAGE",
    "GENERIC_MESSAGE_PREFIX",
    "MODEL_UNAVAILABLE_MESSAGE",
    "ProviderErrorInfo",
    "ProviderErrorKind",
    "RATE_LIMITED_MESSAGE",
    "classify_provider_error",
]
