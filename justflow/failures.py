"""Failure classification for step errors.

Steps signal how a failure should be treated by raising one of the
``StepError`` subclasses. Anything else is classified here so the retry
handler never has to parse error strings.

Example::

    from justflow.failures import ErrorKind, classify

    classify(TransientFailure("503 from provider"))  # ErrorKind.TRANSIENT
"""

from __future__ import annotations

import asyncio

import httpx

from justflow.types import (
    ErrorKind,
    PollTimeout,
    ProviderFailure,
    StepError,
    TransientFailure,
    ValidationFailure,
)

_VALIDATION_TYPES: tuple[type[BaseException], ...] = (
    ValueError,
    TypeError,
    KeyError,
    LookupError,
)


def classify(error: BaseException) -> ErrorKind:
    """Map an exception to the failure taxonomy."""
    if isinstance(error, StepError):
        return error.kind
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TRANSIENT
    if isinstance(error, httpx.TransportError):
        return ErrorKind.TRANSIENT
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(error.response.status_code)
    if isinstance(error, _VALIDATION_TYPES):
        return ErrorKind.VALIDATION
    return ErrorKind.TRANSIENT


def classify_status(status_code: int) -> ErrorKind:
    """Classify an HTTP status returned by the internal service boundary."""
    if status_code in (408, 425, 429) or status_code >= 500:
        return ErrorKind.TRANSIENT
    if status_code in (401, 403):
        return ErrorKind.PROVIDER_TERMINAL
    return ErrorKind.VALIDATION


def describe(error: BaseException, limit: int = 500) -> str:
    """Human-readable, length-bounded error message for persisted records."""
    message = str(error) or type(error).__name__
    return message[:limit]


__all__ = [
    "ErrorKind",
    "PollTimeout",
    "ProviderFailure",
    "StepError",
    "TransientFailure",
    "ValidationFailure",
    "classify",
    "classify_status",
    "describe",
]
